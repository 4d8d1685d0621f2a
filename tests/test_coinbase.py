"""Coinbase onramp adapter: CDP bearer tokens, checkout sessions, webhook signatures."""

import base64
import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from heliumtools.adapters.coinbase import CoinbaseOnramp, build_cdp_jwt, sign_webhook


SESSION_URL = "https://api.developer.coinbase.com/onramp/v1/token"


def ed25519_secret():
    private = Ed25519PrivateKey.generate()
    seed = private.private_bytes_raw()
    public = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return base64.b64encode(seed + public).decode(), private.public_key()


def onramp(handler=None, **overrides):
    secret, _ = ed25519_secret()
    kwargs = {
        "api_key": "organizations/org/apiKeys/key",
        "api_secret": secret,
        "project_id": "project-1",
        "destination_address": "TreasuryPubkey111",
        "webhook_secret": "whsec-unit",
        "session_url": SESSION_URL,
    }
    kwargs.update(overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return CoinbaseOnramp(http=http, **kwargs)


def test_cdp_jwt_is_scoped_to_one_uri():
    secret, public_key = ed25519_secret()

    token = build_cdp_jwt("key-name", secret, "post", SESSION_URL)

    header = jwt.get_unverified_header(token)
    assert header["kid"] == "key-name"
    assert header["alg"] == "EdDSA"
    assert len(header["nonce"]) == 32
    claims = jwt.decode(token, public_key, algorithms=["EdDSA"])
    assert claims["sub"] == "key-name"
    assert claims["iss"] == "cdp"
    assert claims["exp"] - claims["nbf"] == 120
    assert claims["uris"] == ["POST api.developer.coinbase.com/onramp/v1/token"]


@pytest.mark.parametrize("secret", ["not base64 at all!", base64.b64encode(b"\x01" * 32).decode()])
def test_cdp_jwt_rejects_unusable_secrets(secret):
    with pytest.raises(ValueError):
        build_cdp_jwt("key-name", secret, "POST", SESSION_URL)


async def test_checkout_session_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["ip"] = request.headers.get("cb-client-ip")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"session": {"onrampUrl": "https://pay.coinbase.com/buy?x=1"}})

    url = await onramp(handler).create_checkout_session("25.50", "dc_order-1", "https://app/return", "203.0.113.9")

    assert url == "https://pay.coinbase.com/buy?x=1"
    assert seen["auth"].startswith("Bearer ")
    assert seen["ip"] == "203.0.113.9"
    assert seen["body"]["partnerUserRef"] == "dc_order-1"
    assert seen["body"]["presetFiatAmount"] == 25.5
    assert seen["body"]["destinationWallets"] == [
        {"address": "TreasuryPubkey111", "assets": ["USDC"], "blockchains": ["solana"]}
    ]


async def test_checkout_session_failures_return_none():
    def rejected(request):
        return httpx.Response(403, text="forbidden")

    def unreachable(request):
        raise httpx.ConnectError("down", request=request)

    def no_url(request):
        return httpx.Response(200, json={"session": {}})

    def not_json(request):
        return httpx.Response(200, text="<html>gateway</html>")

    def json_list(request):
        return httpx.Response(200, json=[{"session": {"url": "https://pay"}}])

    for handler in (rejected, unreachable, no_url, not_json, json_list):
        assert await onramp(handler).create_checkout_session("10", "dc_x", "https://app/return") is None


async def test_unconfigured_gateway_skips_the_api():
    def handler(request):
        raise AssertionError("no request expected")

    gateway = onramp(handler, api_key="")

    assert not gateway.configured
    assert await gateway.create_checkout_session("10", "dc_x", "https://app/return") is None


def test_inbound_signature_window():
    gateway = onramp()
    raw = b'{"status":"completed"}'
    now = int(time.time())

    fresh, ts = sign_webhook(raw, "whsec-unit", now)
    old, old_ts = sign_webhook(raw, "whsec-unit", now - 301)

    assert gateway.verify_inbound_signature(raw, str(ts), fresh)
    assert not gateway.verify_inbound_signature(raw, str(old_ts), old)
    assert not gateway.verify_inbound_signature(raw, "yesterday", fresh)
    assert not gateway.verify_inbound_signature(raw, str(ts), "0" * 64)
