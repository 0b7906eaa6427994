from functools import lru_cache

from django.conf import settings

from .client import BkashGatewayClient
from .mock import MockGatewayClient
from .token import TokenManager


def is_configured() -> bool:
    cfg = settings.BKASH
    if cfg.get("MOCK"):
        return True
    return bool(cfg.get("ENABLED") and cfg.get("APP_KEY") and cfg.get("APP_SECRET")
                and cfg.get("USERNAME") and cfg.get("PASSWORD"))


def build_gateway(cfg=None, frontend_url=None):
    cfg = cfg or settings.BKASH
    if cfg.get("MOCK"):
        return MockGatewayClient(
            frontend_url=frontend_url or settings.FRONTEND_URL,
            callback_url=cfg.get("CALLBACK_URL", ""),
        )
    tokens = TokenManager(
        base_url=cfg["BASE_URL"],
        app_key=cfg["APP_KEY"],
        app_secret=cfg["APP_SECRET"],
        username=cfg["USERNAME"],
        password=cfg["PASSWORD"],
        timeout=cfg.get("TIMEOUT", 30),
    )
    return BkashGatewayClient(
        base_url=cfg["BASE_URL"],
        app_key=cfg["APP_KEY"],
        callback_url=cfg["CALLBACK_URL"],
        token_manager=tokens,
        timeout=cfg.get("TIMEOUT", 30),
    )


@lru_cache(maxsize=1)
def get_gateway():
    """Process-wide gateway client; the token cache lives on it."""
    return build_gateway()
