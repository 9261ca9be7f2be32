"""Create tables and seed the feature registry and plan catalog (idempotent).

Run from repo root:
    python -m scripts.seed_catalog
"""

import asyncio

from planguard.core.config import get_settings
from planguard.core.logging import configure_structlog
from planguard.db import close_db, init_db
from planguard.db.seed import seed_catalog


async def main() -> None:
    settings = get_settings()
    configure_structlog(settings.log_level, settings.json_logs, service=settings.app_name)

    await init_db()
    try:
        await seed_catalog()
    finally:
        await close_db()
    print("Catalog seeded.")


if __name__ == "__main__":
    asyncio.run(main())
