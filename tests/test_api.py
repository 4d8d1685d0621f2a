"""HTTP surface tests with chain, swap and Redis collaborators replaced by fakes."""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from heliumtools.adapters.coinbase import sign_webhook
from heliumtools.adapters.solana import SolanaRPCError
from heliumtools.common.config import settings
from heliumtools.services.dc_purchase import main
from heliumtools.services.dc_purchase.reconciliation import ReconciliationSweep

from conftest import ESCROW, FakeRedis


@pytest.fixture
def client(monkeypatch, directory, order_service, processor, chain):
    monkeypatch.setattr(main, "rdb", FakeRedis())
    monkeypatch.setattr(main, "processor", processor)
    monkeypatch.setattr(main, "chain", chain)
    monkeypatch.setattr(main, "sweep", ReconciliationSweep(order_service, processor))
    return TestClient(main.app)


def admin_headers():
    return {"x-api-key": settings.api_key}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/metrics").status_code == 200


def test_resolve_oui_returns_live_balance(client, chain):
    chain.balances[ESCROW] = 1234

    resp = client.get("/dc-purchase/oui/42")

    assert resp.status_code == 200
    body = resp.json()
    assert body["escrow"] == ESCROW
    assert body["escrowDcBalance"] == "1234"
    assert body["balanceLastUpdated"] is not None
    assert main.directory.latest_balance(42).balance_dc == "1234"


def test_resolve_oui_falls_back_to_snapshot(client, chain, directory, monkeypatch):
    directory.record_balance(42, 99)

    async def failing_balance(_account):
        raise SolanaRPCError("Node is behind", {"code": -32005})

    monkeypatch.setattr(chain, "get_token_balance", failing_balance)

    resp = client.get("/dc-purchase/oui/42")

    assert resp.status_code == 200
    assert resp.json()["escrowDcBalance"] == "99"


def test_resolve_oui_errors(client):
    assert client.get("/dc-purchase/oui/abc").status_code == 400
    assert client.get("/dc-purchase/oui/999").status_code == 404


def test_create_order_returns_checkout_url(client):
    resp = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50", "email": "ops@example.com"})

    assert resp.status_code == 200
    body = resp.json()
    order_id = body["orderId"]
    assert body["checkoutUrl"].endswith(f"/{order_id}")
    assert body["escrow"] == ESCROW
    assert main.order_service.get_order(order_id).status == "onramp_started"


@pytest.mark.parametrize(
    "payload,status",
    [
        ({"oui": 42, "usd": "1"}, 400),
        ({"oui": 42, "usd": "5000"}, 400),
        ({"oui": 42}, 400),
        ({"oui": 999, "usd": "50"}, 404),
    ],
)
def test_create_order_rejections(client, payload, status):
    assert client.post("/dc-purchase/orders", json=payload).status_code == status


def test_create_order_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_per_minute", 1)

    first = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"})
    second = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"})

    assert first.status_code == 200
    assert second.status_code == 429


def test_get_order_projection(client):
    order_id = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"}).json()["orderId"]

    body = client.get(f"/dc-purchase/orders/{order_id}").json()

    assert body["orderId"] == order_id
    assert body["status"] == "onramp_started"
    assert body["usdRequested"] == "50"
    assert body["txs"] == {"usdcSig": None, "swapSig": None, "mintSigs": [], "delegateSig": None}
    assert body["error"] is None
    assert client.get("/dc-purchase/orders/missing").status_code == 404


def _post_webhook(client, body: dict, secret=None):
    raw = json.dumps(body).encode()
    signature, ts = sign_webhook(raw, secret or settings.coinbase_webhook_secret)
    return client.post(
        "/dc-purchase/webhooks/coinbase",
        content=raw,
        headers={"X-Coinbase-Signature": signature, "X-Coinbase-Timestamp": str(ts), "Content-Type": "application/json"},
    )


def test_webhook_drives_order_to_complete(client):
    order_id = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"}).json()["orderId"]

    resp = _post_webhook(
        client,
        {"data": {"partner_user_ref": f"dc_{order_id}", "status": "completed", "crypto": {"amount": "50"}}},
    )

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    body = client.get(f"/dc-purchase/orders/{order_id}").json()
    assert body["status"] == "complete"
    assert body["usdcAmountReceived"] == "50"
    assert body["dcDelegated"]
    assert body["txs"]["swapSig"] and body["txs"]["mintSigs"] and body["txs"]["delegateSig"]


def test_webhook_rejections(client):
    assert _post_webhook(client, {"partnerUserRef": "dc_x"}, secret="wrong").status_code == 401
    assert _post_webhook(client, {"data": {"status": "completed"}}).status_code == 400
    assert _post_webhook(client, {"partnerUserRef": "dc_unknown", "status": "completed"}).status_code == 404


def test_admin_endpoints_require_api_key(client):
    assert client.post("/dc-purchase/admin/reconcile").status_code == 401
    assert client.post("/dc-purchase/admin/orders/x/resume", headers={"x-api-key": "nope"}).status_code == 401


def test_admin_reconcile_redrives_pending_orders(client):
    order_id = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"}).json()["orderId"]
    main.order_service.update_status(order_id, "payment_confirmed")

    resp = client.post("/dc-purchase/admin/reconcile", headers=admin_headers())

    assert resp.status_code == 200
    assert resp.json() == {"scanned": 1, "failed": 0}
    assert main.order_service.get_order(order_id).status == "complete"


def test_admin_resume(client):
    assert client.post("/dc-purchase/admin/orders/missing/resume", headers=admin_headers()).status_code == 404

    order_id = client.post("/dc-purchase/orders", json={"oui": 42, "usd": "50"}).json()["orderId"]
    resp = client.post(f"/dc-purchase/admin/orders/{order_id}/resume", headers=admin_headers())

    assert resp.json() == {"orderId": order_id, "status": "onramp_started"}


def test_admin_oui_sync(client, monkeypatch):
    async def fake_fetch(url):
        return [{"oui": 77, "owner": "o", "payer": "p", "escrow": "e77"}]

    monkeypatch.setattr(main, "fetch_ouis_from_api", fake_fetch)

    resp = client.post("/dc-purchase/admin/ouis/sync", headers=admin_headers())

    assert resp.json() == {"synced": 1}
    assert client.get("/dc-purchase/oui/77").json()["escrow"] == "e77"


def test_admin_oui_sync_registry_down(client, monkeypatch):
    async def failing_fetch(url):
        raise httpx.ConnectError("registry down")

    monkeypatch.setattr(main, "fetch_ouis_from_api", failing_fetch)

    assert client.post("/dc-purchase/admin/ouis/sync", headers=admin_headers()).status_code == 502


def test_shutdown_stops_the_sweep_before_closing_clients(monkeypatch):
    shutdown = []

    class Sweep:
        async def run_forever(self, interval_seconds):
            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                shutdown.append("sweep_stopped")
                raise

    class Client:
        def __init__(self, name):
            self.name = name

        async def close(self):
            shutdown.append(f"{self.name}_closed")

    monkeypatch.setattr(settings, "reconciliation_interval_seconds", 3600)
    monkeypatch.setattr(main, "rdb", FakeRedis())
    monkeypatch.setattr(main, "sweep", Sweep())
    for name in ("chain", "jupiter", "gateway"):
        monkeypatch.setattr(main, name, Client(name))

    with TestClient(main.app) as live:
        assert live.get("/health").status_code == 200

    assert shutdown == ["sweep_stopped", "chain_closed", "jupiter_closed", "gateway_closed"]
