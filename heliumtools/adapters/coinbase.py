"""Coinbase onramp: hosted checkout sessions and webhook authentication."""

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from decimal import Decimal
from typing import Protocol

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from heliumtools.common.logging import logger
from heliumtools.common.metrics import retries_total


SIGNATURE_HEADER = "X-Coinbase-Signature"
TIMESTAMP_HEADER = "X-Coinbase-Timestamp"
JWT_TTL_SECONDS = 120


class OnrampGateway(Protocol):
    async def create_checkout_session(
        self,
        fiat_amount: str,
        partner_user_ref: str,
        redirect_url: str,
        client_ip: str | None = None,
    ) -> str | None: ...

    def verify_inbound_signature(self, raw_body: bytes, timestamp: str | None, signature: str | None) -> bool: ...


def _signing_key(api_secret: str):
    """Return (key, algorithm) for a CDP secret: PEM EC key or base64 Ed25519 key pair."""

    secret = api_secret.replace("\\n", "\n").strip()
    if "-----BEGIN" in secret and "PRIVATE KEY" in secret:
        return secret, "ES256"
    try:
        decoded = base64.b64decode(secret + "=" * (-len(secret) % 4), altchars=b"-_")
    except (binascii.Error, ValueError) as exc:
        raise ValueError("CDP secret must be a PEM EC key or a base64 Ed25519 key") from exc
    if len(decoded) != 64:
        raise ValueError(f"Invalid Ed25519 key length: expected 64 bytes, got {len(decoded)}")
    return Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"


def build_cdp_jwt(api_key: str, api_secret: str, method: str, url: str, now: int | None = None) -> str:
    """Short-lived bearer token scoped to one `METHOD host/path` URI."""

    parsed = httpx.URL(url)
    now = int(time.time()) if now is None else now
    key, algorithm = _signing_key(api_secret)
    payload = {
        "sub": api_key,
        "iss": "cdp",
        "nbf": now,
        "exp": now + JWT_TTL_SECONDS,
        "uris": [f"{method.upper()} {parsed.host}{parsed.path}"],
    }
    return jwt.encode(payload, key, algorithm=algorithm, headers={"kid": api_key, "nonce": secrets.token_hex(16)})


def sign_webhook(raw_body: bytes, secret: str, timestamp: int | None = None) -> tuple[str, int]:
    """Compute the `(signature, timestamp)` pair a sender attaches to a webhook."""

    ts = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{ts}.".encode() + raw_body
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return signature, ts


class CoinbaseOnramp:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        project_id: str,
        destination_address: str,
        webhook_secret: str,
        session_url: str = "https://api.coinbase.com/onramp/v2/sessions",
        tolerance_seconds: int = 300,
        http: httpx.AsyncClient | None = None,
        service_name: str = "dc-purchase",
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.project_id = project_id
        self.destination_address = destination_address
        self.webhook_secret = webhook_secret
        self.session_url = session_url
        self.tolerance_seconds = tolerance_seconds
        self._client = http or httpx.AsyncClient(timeout=15.0)
        self.service_name = service_name

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret and self.destination_address)

    async def create_checkout_session(
        self,
        fiat_amount: str,
        partner_user_ref: str,
        redirect_url: str,
        client_ip: str | None = None,
    ) -> str | None:
        """Create a USDC-on-Solana onramp session; returns the checkout URL or None."""

        if not self.configured:
            logger.warning("coinbase_session_skipped reason=not_configured ref=%s", partner_user_ref)
            return None

        body = {
            "projectId": self.project_id,
            "destinationWallets": [
                {"address": self.destination_address, "assets": ["USDC"], "blockchains": ["solana"]}
            ],
            "partnerUserRef": partner_user_ref,
            "presetFiatAmount": float(Decimal(str(fiat_amount))),
            "fiatCurrency": "USD",
            "redirectUrl": redirect_url,
        }
        try:
            token = build_cdp_jwt(self.api_key, self.api_secret, "POST", self.session_url)
        except ValueError as exc:
            logger.error("coinbase_jwt_failed ref=%s error=%s", partner_user_ref, exc)
            return None

        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if client_ip:
            headers["CB-CLIENT-IP"] = client_ip
        try:
            resp = await self._client.post(self.session_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            retries_total.labels(service=self.service_name, dependency="coinbase").inc()
            logger.error("coinbase_session_error ref=%s error=%s", partner_user_ref, exc)
            return None
        if resp.status_code >= 400:
            logger.error(
                "coinbase_session_rejected ref=%s status=%s body=%s",
                partner_user_ref,
                resp.status_code,
                resp.text[:500],
            )
            return None

        try:
            payload = resp.json()
        except ValueError:
            logger.error("coinbase_session_unparseable ref=%s body=%s", partner_user_ref, resp.text[:500])
            return None
        session = payload.get("session") if isinstance(payload, dict) else None
        if not isinstance(session, dict):
            logger.error("coinbase_session_unexpected_shape ref=%s", partner_user_ref)
            return None
        url = session.get("url") or session.get("onrampUrl")
        if not url:
            logger.error("coinbase_session_missing_url ref=%s", partner_user_ref)
        return url or None

    def verify_inbound_signature(self, raw_body: bytes, timestamp: str | None, signature: str | None) -> bool:
        """HMAC-SHA256 over `"{timestamp}.{raw_body}"` within the replay window."""

        if not self.webhook_secret:
            logger.error("coinbase_webhook_rejected reason=secret_not_configured")
            return False
        if not timestamp or not signature:
            return False
        try:
            ts = int(timestamp)
        except ValueError:
            return False
        if abs(int(time.time()) - ts) > self.tolerance_seconds:
            return False
        expected, _ = sign_webhook(raw_body, self.webhook_secret, ts)
        return hmac.compare_digest(expected, signature.strip())

    async def close(self) -> None:
        await self._client.aclose()
