# app/services/signers.py
from __future__ import annotations

import logging
from typing import Protocol

import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_hex

from app.chain.client import normalize_address
from app.core.errors import NetworkTimeout, SignatureError

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """Anything that can produce a personal-message signature over a 32-byte digest."""

    address: str

    def sign(self, digest: bytes) -> str: ...


def recover_signer(digest: bytes, signature: str) -> str:
    """Address that signed `digest` under the "\\x19Ethereum Signed Message:\\n32" prefix."""
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=signature)
    except Exception as exc:
        raise SignatureError(f"signature could not be recovered: {exc}") from exc


class LocalKeySigner:
    """Attestor key held by this process."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)
        self.address = self._account.address

    def sign(self, digest: bytes) -> str:
        if len(digest) != 32:
            raise SignatureError(f"digest must be 32 bytes, got {len(digest)}")
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return to_hex(signed.signature)


class RemoteSigner:
    """
    Attestor key held by a signing backend.

    POST {endpoint}/oracle/sign {"payloadHash", "oracleAddress"} -> {"signature"}
    """

    def __init__(self, endpoint: str, address: str, *, timeout: float = 10.0, session: requests.Session | None = None):
        self.endpoint = endpoint.rstrip("/")
        self.address = normalize_address(address)
        self.timeout = timeout
        self._http = session or requests.Session()

    def sign(self, digest: bytes) -> str:
        payload = {"payloadHash": to_hex(digest), "oracleAddress": self.address}
        try:
            resp = self._http.post(f"{self.endpoint}/oracle/sign", json=payload, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise NetworkTimeout(f"signing backend unreachable: {exc}") from exc

        if resp.status_code != 200:
            logger.warning("[signer] backend refused payload %s: %s", payload["payloadHash"], resp.text[:200])
            raise SignatureError(f"signing backend returned HTTP {resp.status_code}")

        try:
            signature = resp.json()["signature"]
        except (ValueError, KeyError) as exc:
            raise SignatureError("signing backend response has no signature") from exc

        if not isinstance(signature, str) or not signature.startswith("0x"):
            raise SignatureError("signing backend returned a malformed signature")
        return signature
