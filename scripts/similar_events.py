"""Semantic demo: print a user's latest event and the events closest to it.

    python -m scripts.similar_events <user-id> [-k 5]
"""

import argparse
import asyncio
import uuid

from sqlalchemy import select

from core.database import async_session
from models.knowledge import KnowledgeEvent
from services.retrieve import find_similar_events


async def main(user_id: uuid.UUID, k: int) -> None:
    async with async_session() as db:
        anchor = (
            await db.execute(
                select(KnowledgeEvent)
                .where(KnowledgeEvent.user_id == user_id)
                .order_by(KnowledgeEvent.timestamp.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if anchor is None:
            print("No knowledge events found for this user.")
            return

        print("Anchor event (what we compare against):")
        print(f"  Source:  {anchor.source}")
        print(f"  When:    {anchor.timestamp}")
        print(f"  Content: {anchor.content}")

        hits = await find_similar_events(db, user_id, anchor.id, k)
        if not hits:
            print("\nNo neighbors found. Has the embedding job run (python -m scripts.embed_events)?")
            return

        print("\nMost semantically similar events:")
        for i, hit in enumerate(hits, 1):
            print(f"\n#{i}  distance={hit.distance:.4f}")
            print(f"  Source:  {hit.event.source}")
            print(f"  When:    {hit.event.timestamp}")
            print(f"  Content: {hit.event.content}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("user_id", type=uuid.UUID)
    parser.add_argument("-k", type=int, default=5)
    args = parser.parse_args()
    asyncio.run(main(args.user_id, args.k))
