"""Knowledge embedding job.

    python -m scripts.embed_events              # one pass
    python -m scripts.embed_events --loop 60    # poll every 60s
"""

import argparse
import asyncio
import logging

from core.database import init_db
from core.logging_config import configure_logging
from services.embeddings import build_embedding_provider
from services.pipeline import EmbeddingPipeline

logger = logging.getLogger("scripts.embed_events")


async def main(loop_seconds: float | None) -> None:
    configure_logging()
    await init_db()
    provider = build_embedding_provider()
    pipeline = EmbeddingPipeline(provider)

    try:
        while True:
            result = await pipeline.run()
            if result.aborted:
                logger.warning("Run aborted (%s); backlog left for next run", result.reason)
            if loop_seconds is None:
                break
            # Drain a backlog without waiting; sleep only once caught up or failing
            if result.aborted or result.selected < pipeline.batch_size:
                await asyncio.sleep(loop_seconds)
    finally:
        # HTTP-backed providers hold a connection pool
        aclose = getattr(provider, "aclose", None)
        if aclose is not None:
            await aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--loop", type=float, metavar="SECONDS", default=None, help="poll interval")
    args = parser.parse_args()
    asyncio.run(main(args.loop))
