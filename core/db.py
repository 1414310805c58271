"""
Async MySQL database engine and session management.

Purpose:
- Create SQLAlchemy async engine for MySQL with aiomysql driver
- Provide async session factory for the DB-backed aggregate store
- Provide Base declarative class for ORM models

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- The DB store opens one short session per store call, so concurrent sweep
  batches never share a session
"""
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config.settings import settings
import logging
from typing import Optional

logger = logging.getLogger(__name__)

Base = declarative_base()

# When USE_DB is off or MYSQL_ASYNC_URL is "disabled", do not create an engine at all.
engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_maker(url: str, echo: bool = False) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
	"""Create an engine and a session factory for the given async URL."""
	new_engine = create_async_engine(url, echo=echo, future=True)
	maker = async_sessionmaker(new_engine, expire_on_commit=False, class_=AsyncSession)
	return new_engine, maker


async def create_schema(target: AsyncEngine) -> None:
	"""Create all tables (development convenience; use migrations in production)."""
	from models import db_models  # noqa: F401 ensure models are imported so tables are registered

	async with target.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


if settings.USE_DB and settings.MYSQL_ASYNC_URL and settings.MYSQL_ASYNC_URL != "disabled":
	# Normal DB case
	engine, async_session_maker = build_session_maker(settings.MYSQL_ASYNC_URL, echo=settings.DEBUG)
	logger.info("Async DB engine created for %s", engine.url.render_as_string(hide_password=True))
else:
	logger.info("DB disabled (USE_DB=%s) – using the in-memory aggregate store.", settings.USE_DB)
