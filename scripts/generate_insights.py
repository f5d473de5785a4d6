"""Insight generation job. Run periodically (e.g. daily from cron).

    python -m scripts.generate_insights
"""

import asyncio

from core.database import init_db
from core.logging_config import configure_logging
from services.insights import InsightGenerator


async def main() -> None:
    configure_logging()
    await init_db()
    await InsightGenerator().run()


if __name__ == "__main__":
    asyncio.run(main())
