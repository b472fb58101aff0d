from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import json

from peerlink.core.config import get_settings
from peerlink.core.logging import configure_logging
from peerlink.persistence.db import create_database
from peerlink.persistence.repos.conversations import to_session_entry
from peerlink.services.ledger import MessageLedger


async def _list_conversations(days: int | None, limit: int, as_json: bool) -> None:
    settings = get_settings()
    db = create_database(settings)
    ledger = MessageLedger(db, settings=settings)
    updated_after = None
    if days is not None:
        updated_after = datetime.now(timezone.utc) - timedelta(days=days)
    try:
        conversations = await ledger.list_conversations(updated_after=updated_after, limit=limit)
    finally:
        await db.dispose()
    entries = [to_session_entry(conv) for conv in conversations]
    if as_json:
        print(json.dumps(entries, indent=2))
        return
    for entry in entries:
        print(
            f"{entry['displayName']} messages={entry['messageCount']} "
            f"updated_at_ms={entry['updatedAt']}"
        )
    print(f"conversations={len(entries)}")


def main() -> None:
    # Read-only report of recorded conversations and their message counters.
    parser = argparse.ArgumentParser(description="List recorded conversations")
    parser.add_argument("--days", type=int, default=None, help="Only conversations active in the last N days")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_list_conversations(args.days, args.limit, args.json))


if __name__ == "__main__":
    main()
