"""
Run one gradebook reconciliation pass: every completed evaluation's total
is written to its test_grades row where the two disagree.

Usage: python scripts/sync_grades.py   (from backend/)
"""

import os
import sys
import asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from papercheck.database import client, db  # noqa: E402
from papercheck.services.gradebook import sync_grades_from_evaluations  # noqa: E402


async def main():
    try:
        synced = await sync_grades_from_evaluations(db)
        print(f"Synced {synced} gradebook row(s)")
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(main())
