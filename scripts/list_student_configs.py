"""
Print the most recent student configuration records from the local store.

Usage:
    python scripts/list_student_configs.py [--db data/student_configs.db] [--limit 20]
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from workshop_relay.errors import ConfigLookupError
from workshop_relay.storage import StudentConfigStore


async def list_configs(db_path: str | None, limit: int) -> int:
    store = StudentConfigStore(db_path)
    try:
        records = await store.list_recent(limit)
    except ConfigLookupError as e:
        print(f"Database error: {e}", file=sys.stderr)
        return 1

    print(f"Total records: {len(records)}\n")
    for index, record in enumerate(records, start=1):
        print(f"{index}. {record['student_name'] or 'Unknown'}")
        print(f"   Session: {record['session_token'][:20]}...")
        print(f"   Created: {record['created_at']}")
        print(f"   Updated: {record['updated_at']}")
        print("")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--db", dest="db_path", default=None, help="SQLite database path")
    parser.add_argument("--limit", type=int, default=20)
    args = parser.parse_args()
    return asyncio.run(list_configs(args.db_path, args.limit))


if __name__ == "__main__":
    sys.exit(main())
