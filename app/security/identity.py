"""Acting user record and identity extraction from bearer tokens. No FastAPI."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Union

import jwt
from jwt.exceptions import InvalidTokenError

from app.security.exceptions import TokenError
from app.security.permissions import Role

BEARER_PREFIX = "bearer "


@dataclass(frozen=True)
class User:
    """Subject of an authorization decision. Role strings outside the enumeration grant nothing."""

    id: str
    role: Union[Role, str]
    email: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> dict:
        role = self.role.value if isinstance(self.role, Role) else self.role
        return {"id": self.id, "role": role, "email": self.email, "name": self.name}


class IdentityExtractor(Protocol):
    """Returns the acting user, None when no credentials are present, or raises TokenError."""

    async def extract(self, request: Any) -> Optional[User]:
        ...


def user_from_claims(claims: Mapping[str, Any]) -> Optional[User]:
    """Build a User from token claims; None if the identifying claims are missing."""
    user_id = claims.get("id") or claims.get("sub")
    role = claims.get("role")
    if not isinstance(user_id, str) or not user_id or not isinstance(role, str):
        return None
    parsed = Role.parse(role)
    return User(
        id=user_id,
        role=parsed if parsed is not None else role,
        email=claims.get("email") if isinstance(claims.get("email"), str) else None,
        name=claims.get("name") if isinstance(claims.get("name"), str) else None,
    )


class JwtIdentityExtractor:
    """Reads `Authorization: Bearer <jwt>` and verifies it with the shared secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def extract(self, request: Any) -> Optional[User]:
        header = request.headers.get("Authorization") or ""
        if not header:
            return None
        if not header.lower().startswith(BEARER_PREFIX):
            raise TokenError("Authorization header is not a bearer token")
        token = header[len(BEARER_PREFIX):].strip()
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except InvalidTokenError as e:
            raise TokenError(f"Invalid token: {e}") from e
        user = user_from_claims(claims)
        if user is None:
            raise TokenError("Token does not carry id and role claims")
        return user
