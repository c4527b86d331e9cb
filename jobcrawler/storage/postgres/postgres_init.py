from typing import Optional

from loguru import logger
from tortoise import Tortoise

from jobcrawler.utils.db_utils import database_url_from_env, to_asyncpg_dsn


MODEL_MODULES = ["jobcrawler.storage.models"]


async def init_postgres(db_url: Optional[str] = None, *, generate_schemas: bool = True) -> None:
    """
    Connect Tortoise to PostgreSQL and create or verify the crawler tables.

    ``companies`` belongs to the ingestion service; it is generated here only
    when missing so a fresh database is usable on its own.
    """
    db_url = to_asyncpg_dsn(db_url or database_url_from_env())

    logger.info("Initializing PostgreSQL and ORM models...")

    await Tortoise.init(
        db_url=db_url,
        modules={"models": MODEL_MODULES},
        use_tz=True,
        timezone="UTC",
    )

    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
        logger.info("PostgreSQL tables created or verified.")
