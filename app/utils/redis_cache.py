import logging

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.core.config import config

logger = logging.getLogger("[LEDGER]")


def create_redis_client() -> redis.Redis:
	return redis.from_url(
		config.REDIS_URL,
		encoding="utf-8",
		decode_responses=True,
	)


def balance_key(user_id: str) -> str:
	return f"user:{user_id}:balance"


def generation_key(user_id: str) -> str:
	return f"user:{user_id}:balance:gen"


class BalanceCache:
	"""
	Read-through cache of user balances.
	The database stays the source of truth: a Redis failure is logged
	and treated as a cache miss.

	Every invalidation bumps a per-user generation counter. A reader takes
	the generation before it reads the database and `set_balance` only
	stores the value while the generation is unchanged, so a read that
	raced with a commit cannot put the old balance back.
	"""

	def __init__(self, client: redis.Redis, ttl_seconds: int = config.CACHE_TTL_SECONDS):
		self.client = client
		self.ttl_seconds = ttl_seconds

	async def get_balance(self, user_id: str) -> int | None:
		try:
			val = await self.client.get(balance_key(user_id))
		except RedisError as e:
			logger.warning(f"Balance cache read failed for '{user_id}': {e}")
			return None
		return int(val) if val is not None else None

	async def generation(self, user_id: str) -> str | None:
		try:
			val = await self.client.get(generation_key(user_id))
		except RedisError as e:
			logger.warning(f"Balance cache read failed for '{user_id}': {e}")
			return None
		return val or "0"

	async def set_balance(self, user_id: str, value: int, generation: str | None):
		if generation is None:
			return
		try:
			async with self.client.pipeline(transaction=True) as pipe:
				await pipe.watch(generation_key(user_id))
				current = await pipe.get(generation_key(user_id))
				if (current or "0") != generation:
					logger.debug(f"Skipped stale balance for '{user_id}'")
					return
				pipe.multi()
				pipe.set(balance_key(user_id), str(value), ex=self.ttl_seconds)
				await pipe.execute()
		except WatchError:
			logger.debug(f"Skipped stale balance for '{user_id}'")
		except RedisError as e:
			logger.warning(f"Balance cache write failed for '{user_id}': {e}")

	async def invalidate(self, user_id: str):
		try:
			async with self.client.pipeline(transaction=True) as pipe:
				pipe.incr(generation_key(user_id))
				pipe.delete(balance_key(user_id))
				await pipe.execute()
		except RedisError as e:
			logger.warning(f"Balance cache delete failed for '{user_id}': {e}")
