import httpx

from app.core.config import config


def create_http_client() -> httpx.AsyncClient:
    """
    One client per process, shared by the payment gateways.
    Built in the app lifespan and closed on shutdown.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.HTTP_TIMEOUT_SECONDS),
        headers={"Accept": "application/json"},
    )
