import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

# settings are read at import time
os.environ.setdefault("JWT_SECRET", "test-secret-key-with-at-least-32-bytes!!")
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMOB_HMAC_SECRET", "paymob-test-hmac-secret")
os.environ.setdefault("PAYMOB_SECRET_KEY", "paymob-secret-key")
os.environ.setdefault("PAYMOB_PUBLIC_KEY", "paymob-public-key")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-1")
os.environ.setdefault("SIGNUP_BONUS_CREDITS", "0")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="ledger-logs-"))

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
	create_async_engine, AsyncSession, async_sessionmaker
)

from app.main import app
from app.core.config import config
from app.core.database import Base
from app.core.dependencies import get_session
from app.gateways.paymob import PaymobGateway
from app.gateways.paypal import PayPalGateway
from app.models import UserRole
from app.utils.service_ledger import CreditLedger

PAYPAL_BASE_URL = "https://paypal.test"
PAYMOB_BASE_URL = "https://paymob.test"


class FakeBalanceCache:
	"""In-memory stand-in for the Redis balance cache."""

	def __init__(self):
		self.values = {}
		self.generations = {}

	async def get_balance(self, user_id):
		return self.values.get(user_id)

	async def generation(self, user_id):
		return str(self.generations.get(user_id, 0))

	async def set_balance(self, user_id, value, generation):
		if generation is None or generation != await self.generation(user_id):
			return
		self.values[user_id] = value

	async def invalidate(self, user_id):
		self.generations[user_id] = self.generations.get(user_id, 0) + 1
		self.values.pop(user_id, None)


class ProviderStub:
	"""
	httpx.MockTransport handler: answers (method, path) with a canned
	response or a callable, and records every request.
	"""

	def __init__(self):
		self.routes = {}
		self.requests = []
		self.add("POST", "/v1/oauth2/token", json={"access_token": "A21AA-token", "expires_in": 32400})

	def add(self, method, path, status_code=200, json=None, handler=None):
		self.routes[(method, path)] = handler or (status_code, json)

	def calls(self, method, path):
		return [r for r in self.requests if r.method == method and r.url.path == path]

	def __call__(self, request: httpx.Request) -> httpx.Response:
		self.requests.append(request)
		route = self.routes.get((request.method, request.url.path))
		if route is None:
			return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
		if callable(route):
			return route(request)
		status_code, body = route
		return httpx.Response(status_code, json=body)


def make_token(user_id: str, **claims) -> str:
	payload = {
		"sub": user_id,
		"exp": datetime.now(timezone.utc) + timedelta(hours=1),
		**claims,
	}
	return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth_headers(user_id: str) -> dict:
	return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest_asyncio.fixture
async def engine(tmp_path):
	# окрема база для КОЖНОГО тесту
	engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)
	yield engine
	await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
	return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def cache():
	return FakeBalanceCache()


@pytest.fixture
def provider_api():
	return ProviderStub()


@pytest_asyncio.fixture
async def gateways(provider_api):
	http = httpx.AsyncClient(transport=httpx.MockTransport(provider_api))
	yield {
		"paypal": PayPalGateway(
			http,
			client_id=config.PAYPAL_CLIENT_ID,
			client_secret=config.PAYPAL_CLIENT_SECRET,
			base_url=PAYPAL_BASE_URL,
			webhook_id=config.PAYPAL_WEBHOOK_ID,
		),
		"paymob": PaymobGateway(
			http,
			secret_key=config.PAYMOB_SECRET_KEY,
			public_key=config.PAYMOB_PUBLIC_KEY,
			hmac_secret=config.PAYMOB_HMAC_SECRET,
			base_url=PAYMOB_BASE_URL,
			public_api_url="https://api.formai.test",
		),
	}
	await http.aclose()


@pytest_asyncio.fixture
async def session(session_factory):
	async with session_factory() as session:
		yield session


@pytest_asyncio.fixture
async def ledger(session, cache):
	return CreditLedger(session, cache)


@pytest_asyncio.fixture
async def make_user(session_factory, cache):
	"""Creates an account, optionally as admin and with a starting balance."""

	async def _make_user(user_id: str, role: UserRole = UserRole.USER, balance: int = 0):
		async with session_factory() as session:
			ledger = CreditLedger(session, cache)
			user = await ledger.ensure_account(user_id, email=f"{user_id}@formai.test")
			user.role = role
			await session.commit()
			if balance:
				await ledger.adjust_credits(
					user_id, balance, actor_id="test", reason="starting balance"
				)
				await ledger.commit()
			return user

	return _make_user


# Override get_session для кожного тесту окремо
@pytest_asyncio.fixture
async def db_session(session_factory, cache, gateways):
	async def get_test_db():
		async with session_factory() as session:
			yield session

	app.dependency_overrides[get_session] = get_test_db
	app.state.balance_cache = cache
	app.state.gateways = gateways

	yield  # Тест виконується тут

	app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(db_session):  # Залежить від db_session
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as client:
		yield client
