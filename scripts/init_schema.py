from __future__ import annotations

import argparse
import asyncio
import sys

from peerlink.core.config import get_settings
from peerlink.core.logging import configure_logging
from peerlink.persistence.db import Database, create_database


async def _init_schema(database_url: str | None) -> int:
    settings = get_settings()
    if database_url:
        db = Database(
            database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            statement_timeout_ms=settings.db_statement_timeout_ms,
            failure_ttl_s=settings.store_failure_cache_s,
        )
    else:
        db = create_database(settings)
    try:
        await db.ensure_ready()
    except Exception as exc:  # noqa: BLE001 - report any connect/DDL failure as a nonzero exit
        print(f"schema_ready=false error={type(exc).__name__}")
        return 1
    finally:
        await db.dispose()
    print("schema_ready=true")
    return 0


def main() -> None:
    # Create the identity and conversation tables ahead of the first request.
    parser = argparse.ArgumentParser(description="Create peerlink tables if they do not exist")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_init_schema(args.database_url)))


if __name__ == "__main__":
    main()
