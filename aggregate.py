"""Reads that span every collection."""
import asyncio
from typing import Dict, List

from database import Record, Store
from registry import COLLECTIONS


async def snapshot(store: Store) -> Dict[str, List[Record]]:
    """All records of every collection, fetched concurrently.

    One failing read fails the whole snapshot.
    """
    results = await asyncio.gather(*(store.fetch_all(name) for name in COLLECTIONS))
    return dict(zip(COLLECTIONS, results))


async def health_counts(store: Store) -> Dict[str, int]:
    counts = await asyncio.gather(*(store.count(name) for name in COLLECTIONS))
    return dict(zip(COLLECTIONS, counts))
