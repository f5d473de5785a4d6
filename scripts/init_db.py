import asyncio

from core.database import init_db
from core.logging_config import configure_logging


async def main() -> None:
    configure_logging()
    await init_db()


if __name__ == "__main__":
    asyncio.run(main())
