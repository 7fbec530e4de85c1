# /app/core/deps.py
from functools import lru_cache

from app.core.config import get_settings
from app.services.container import Services, build_default_services


@lru_cache(maxsize=1)
def get_services() -> Services:
    """
    Process-wide service graph. Tests override this dependency with a graph
    built around an in-memory ledger.
    """
    return build_default_services(get_settings())
