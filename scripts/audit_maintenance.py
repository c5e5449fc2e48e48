# scripts/audit_maintenance.py
"""
Out-of-band audit jobs: create tables, age-based cleanup, policy archive+cleanup, alert scan.

    python scripts/audit_maintenance.py init-db
    python scripts/audit_maintenance.py cleanup
    python scripts/audit_maintenance.py archive --policy audit
    python scripts/audit_maintenance.py scan --days 1
    python scripts/audit_maintenance.py stats
"""

import sys
from pathlib import Path

# Ensure project root is on the path when running this script directly
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import argparse
import asyncio
import json
import logging

from app.api.dependencies import build_services
from app.config.logging import configure_logging
from app.config.settings import get_settings
from app.infrastructure.database.audit_repository_db import DbAuditRepository
from app.infrastructure.database.ownership_repository_db import DbOwnershipRepository
from app.infrastructure.database.session import Base, create_engine, create_session_factory
from app.infrastructure.database import models  # noqa: F401  (registers tables on Base)

logger = logging.getLogger("audit_maintenance")


async def run(command: str, args: argparse.Namespace) -> dict:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    try:
        if command == "init-db":
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return {"tables": sorted(Base.metadata.tables)}

        session_factory = create_session_factory(engine)
        services = build_services(
            settings,
            DbAuditRepository(session_factory),
            DbOwnershipRepository(session_factory),
        )
        if command == "cleanup":
            return {"deleted_count": await services.audit_service.cleanup()}
        if command == "archive":
            return await services.retention_manager.archive_then_cleanup(args.policy)
        if command == "scan":
            alerts = await services.alert_service.scan_audit_trail(args.days)
            return {"alerts": [a.to_payload() for a in alerts]}
        if command == "stats":
            return await services.retention_manager.get_retention_stats()
        raise ValueError(f"Unknown command: {command}")
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit trail maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db")
    sub.add_parser("cleanup")
    archive = sub.add_parser("archive")
    archive.add_argument("--policy", default="audit")
    scan = sub.add_parser("scan")
    scan.add_argument("--days", type=int, default=1)
    sub.add_parser("stats")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    result = asyncio.run(run(args.command, args))
    logger.info("audit_maintenance_completed", extra={"command": args.command})
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
