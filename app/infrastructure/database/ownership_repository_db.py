"""DB-backed ownership lookups for content resources. Implements OwnershipRepository protocol."""

from dataclasses import dataclass
from typing import Dict, Optional, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.infrastructure.database.models import BaseModel, Media, Notification, Page, Product, User


@dataclass(frozen=True)
class OwnershipMapping:
    model: Type[BaseModel]
    # Fixed owner column; None uses the owner field the caller asks for.
    owner_column: Optional[str] = None


OWNERSHIP_MAPPINGS: Dict[str, OwnershipMapping] = {
    "products": OwnershipMapping(Product),
    "pages": OwnershipMapping(Page),
    "media": OwnershipMapping(Media),
    "users": OwnershipMapping(User),
    # A profile is the user row itself.
    "profile": OwnershipMapping(User, owner_column="id"),
    "notifications": OwnershipMapping(Notification, owner_column="user_id"),
}


class DbOwnershipRepository:
    """Resolves the owner column of a content row by id. Soft-deleted rows count as missing."""

    def __init__(self, session_factory: async_sessionmaker, default_resource: str = "products") -> None:
        self._session_factory = session_factory
        self._default_resource = default_resource

    async def get_owner_id(
        self,
        resource_id: str,
        owner_field: str,
        resource_type: Optional[str] = None,
    ) -> Optional[str]:
        resource_type = resource_type or self._default_resource
        mapping = OWNERSHIP_MAPPINGS.get(resource_type)
        if mapping is None:
            raise ValueError(f"No ownership mapping for resource '{resource_type}'")
        model = mapping.model
        column = getattr(model, mapping.owner_column or owner_field, None)
        if column is None:
            raise ValueError(f"{model.__tablename__} has no owner field '{owner_field}'")
        stmt = select(column).where(model.id == resource_id, model.is_deleted == False)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            owner = result.scalar_one_or_none()
        return str(owner) if owner is not None else None
