# app/services/nonces.py
from __future__ import annotations

import secrets
import threading
import time
from typing import Dict, Protocol


class NonceSource(Protocol):
    def next(self, signer: str) -> int: ...


class RandomNonceSource:
    """128-bit random nonces, collision odds are negligible per subject."""

    def next(self, signer: str) -> int:
        return secrets.randbits(128)


class CounterNonceSource:
    """
    Strictly increasing per signer. Seeded from nanosecond time so a restarted
    process still issues values above anything it issued before.
    """

    def __init__(self) -> None:
        self._last: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, signer: str) -> int:
        key = signer.lower()
        with self._lock:
            value = max(self._last.get(key, 0) + 1, time.time_ns())
            self._last[key] = value
            return value


def nonce_source_for(strategy: str) -> NonceSource:
    if strategy == "random":
        return RandomNonceSource()
    if strategy == "counter":
        return CounterNonceSource()
    raise ValueError(f"Unknown nonce strategy: {strategy}")
