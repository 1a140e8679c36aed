from sqlalchemy.ext.asyncio import (
	create_async_engine, AsyncSession, async_sessionmaker
)
from sqlalchemy.orm import declarative_base
from app.core.config import config


def _engine_options(url: str) -> dict:
	if url.startswith("sqlite"):
		return {}
	# pooled connections to Postgres can go stale between requests
	return {"pool_pre_ping": True, "pool_size": config.DB_POOL_SIZE}


engine = create_async_engine(
	config.DATABASE_URL,
	echo=config.DEBUG_MODE,
	**_engine_options(config.DATABASE_URL)
)
async_session = async_sessionmaker(
	bind=engine,
	expire_on_commit=False,
	class_=AsyncSession
)

Base = declarative_base()
