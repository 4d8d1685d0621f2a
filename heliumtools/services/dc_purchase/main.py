"""HTTP surface for DC purchases: beneficiary lookup, orders, onramp webhooks, admin.

Order processing runs in FastAPI background tasks after the webhook response is
sent; the reconciliation sweep runs in the app lifespan and is also exposed as
an admin endpoint for cron-driven deployments.
"""

import asyncio
import json
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from time import perf_counter, time
from uuid import uuid4

import httpx
import redis
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from heliumtools.adapters.coinbase import CoinbaseOnramp
from heliumtools.adapters.data_credits import Treasury
from heliumtools.adapters.jupiter import JupiterClient
from heliumtools.adapters.solana import ChainError, SolanaClient
from heliumtools.common.config import settings
from heliumtools.common.db import SessionLocal
from heliumtools.common.logging import configure_logging, logger, trace_id_ctx
from heliumtools.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    webhook_requests_total,
)
from heliumtools.common.startup import log_startup_config
from heliumtools.common.tracing import instrument_app, setup_tracing
from heliumtools.services.dc_purchase.directory import OuiDirectory, fetch_ouis_from_api
from heliumtools.services.dc_purchase.orders import (
    BeneficiaryNotFound,
    InvalidAmount,
    OrderNotFound,
    OrderService,
)
from heliumtools.services.dc_purchase.processor import OrderProcessor, SwapPolicy
from heliumtools.services.dc_purchase.reconciliation import ReconciliationSweep
from heliumtools.services.dc_purchase.schemas import (
    BeneficiaryResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderResponse,
)
from heliumtools.services.dc_purchase.webhook import WebhookIntake, WebhookInvalid, WebhookUnauthorized

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "database_dsn",
        "redis_url",
        "solana_rpc_url",
        "solana_commitment",
        "treasury_public_key",
        "jupiter_quote_url",
        "processing_lease_seconds",
        "reconciliation_interval_seconds",
    ],
)

PREFIX = "/dc-purchase"


def load_treasury() -> Treasury | None:
    if not settings.treasury_private_key:
        logger.warning("treasury_not_configured processing_disabled=true")
        return None
    return Treasury.from_secret(settings.treasury_private_key)


treasury = load_treasury()
directory = OuiDirectory(SessionLocal)
order_service = OrderService(
    SessionLocal,
    directory,
    min_usd=settings.dc_purchase_min_usd,
    max_usd=settings.dc_purchase_max_usd,
    service_name=settings.service_name,
)
chain = SolanaClient(
    settings.solana_rpc_url,
    commitment=settings.solana_commitment,
    max_attempts=settings.submit_max_attempts,
    confirm_timeout_seconds=settings.confirm_timeout_seconds,
    poll_interval_seconds=settings.confirm_poll_interval_seconds,
    service_name=settings.service_name,
)
jupiter = JupiterClient(settings.jupiter_quote_url, settings.jupiter_swap_url, api_key=settings.jupiter_api_key)
gateway = CoinbaseOnramp(
    api_key=settings.coinbase_cdp_api_key,
    api_secret=settings.coinbase_cdp_api_secret,
    project_id=settings.coinbase_onramp_project_id,
    destination_address=settings.treasury_public_key or (str(treasury.pubkey) if treasury else ""),
    webhook_secret=settings.coinbase_webhook_secret,
    session_url=settings.coinbase_onramp_url,
    tolerance_seconds=settings.webhook_tolerance_seconds,
    service_name=settings.service_name,
)
processor = OrderProcessor(
    order_service,
    chain,
    jupiter,
    treasury,
    swap_policy=SwapPolicy(
        max_attempts=settings.swap_max_attempts,
        slippage_bps=settings.swap_slippage_bps,
        retry_delay_seconds=settings.swap_retry_delay_seconds,
        confirm_timeout_seconds=settings.confirm_timeout_seconds,
    ),
    max_iterations=settings.processor_max_iterations,
    step_delay_seconds=settings.processor_step_delay_seconds,
    lease_seconds=settings.processing_lease_seconds,
    verify_treasury_usdc=settings.verify_treasury_usdc,
    service_name=settings.service_name,
)
intake = WebhookIntake(order_service, gateway)
sweep = ReconciliationSweep(order_service, processor, service_name=settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the periodic reconciliation sweep with the app lifecycle."""

    sweep_task = None
    if settings.reconciliation_interval_seconds > 0:
        sweep_task = asyncio.create_task(sweep.run_forever(settings.reconciliation_interval_seconds))
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    await chain.close()
    await jupiter.close()
    await gateway.close()


app = FastAPI(title="Helium DC Purchase", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject admin requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def enforce_token_bucket(client_id: str) -> None:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:dc-purchase:{client_id}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0

    try:
        values = rdb.hmget(key, "tokens", "updated_at")
    except redis.RedisError as exc:
        logger.warning("rate_limit_unavailable: %s", exc)
        return
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    elapsed = max(0.0, now - updated_at)
    tokens = min(capacity, tokens + elapsed * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    try:
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        logger.warning("rate_limit_write_failed: %s", exc)
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def escrow_balance(oui: int, escrow: str) -> tuple[str | None, datetime | None]:
    """Live escrow DC balance with a Redis cache; falls back to the last stored snapshot."""

    cache_key = f"escrow-balance:{oui}"
    try:
        cached = rdb.get(cache_key)
        if cached:
            data = json.loads(cached)
            return data["balance_dc"], datetime.fromisoformat(data["fetched_at"])
    except redis.RedisError as exc:
        logger.warning("balance_cache_read_failed: %s", exc)

    try:
        balance = await chain.get_token_balance(escrow)
    except (ChainError, httpx.HTTPError) as exc:
        logger.warning("escrow_balance_unavailable oui=%s error=%s", oui, exc)
        snapshot = directory.latest_balance(oui)
        if snapshot is None:
            return None, None
        return snapshot.balance_dc, snapshot.fetched_at

    fetched_at = datetime.now(timezone.utc)
    directory.record_balance(oui, balance)
    try:
        rdb.setex(
            cache_key,
            settings.balance_cache_ttl_seconds,
            json.dumps({"balance_dc": str(balance), "fetched_at": fetched_at.isoformat()}),
        )
    except redis.RedisError as exc:
        logger.warning("balance_cache_write_failed: %s", exc)
    return str(balance), fetched_at


@app.get(f"{PREFIX}/oui/{{oui}}", response_model=BeneficiaryResponse)
async def resolve_oui(oui: str):
    """Resolve an OUI to its payer/escrow and current escrow DC balance."""

    try:
        oui_number = int(oui)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid OUI") from exc
    try:
        beneficiary = order_service.resolve_beneficiary(oui_number)
    except BeneficiaryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    balance, fetched_at = await escrow_balance(beneficiary.oui, beneficiary.escrow)
    return BeneficiaryResponse(
        oui=beneficiary.oui,
        payer=beneficiary.payer,
        escrow=beneficiary.escrow,
        escrow_dc_balance=balance,
        balance_last_updated=fetched_at,
    )


@app.post(f"{PREFIX}/orders", response_model=CreateOrderResponse)
async def create_order(req: CreateOrderRequest, request: Request):
    """Create an order and return the hosted checkout URL."""

    client_ip = _client_ip(request)
    enforce_token_bucket(client_ip or "unknown")
    try:
        beneficiary = order_service.resolve_beneficiary(req.oui)
    except BeneficiaryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        order_id = order_service.create_order(req.oui, beneficiary, req.usd, email=req.email)
    except InvalidAmount as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    checkout_url = await order_service.open_checkout(
        order_id,
        gateway,
        settings.onramp_redirect_base_url,
        client_ip=client_ip,
    )
    snapshot = directory.latest_balance(req.oui)
    return CreateOrderResponse(
        order_id=order_id,
        checkout_url=checkout_url,
        payer=beneficiary.payer,
        escrow=beneficiary.escrow,
        escrow_dc_balance=snapshot.balance_dc if snapshot else None,
        balance_last_updated=snapshot.fetched_at if snapshot else None,
    )


@app.get(f"{PREFIX}/orders/{{order_id}}", response_model=OrderResponse)
def get_order(order_id: str):
    """Public order projection."""

    try:
        order = order_service.get_order(order_id)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc
    return OrderResponse.from_order(order)


@app.post(f"{PREFIX}/webhooks/coinbase")
async def coinbase_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_coinbase_signature: str | None = Header(default=None),
    x_coinbase_timestamp: str | None = Header(default=None),
):
    """Authenticate an onramp event and schedule processing when payment completed."""

    raw_body = await request.body()
    try:
        outcome = intake.handle(raw_body, x_coinbase_timestamp, x_coinbase_signature)
    except WebhookUnauthorized as exc:
        webhook_requests_total.labels(service=settings.service_name, result="unauthorized").inc()
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except WebhookInvalid as exc:
        webhook_requests_total.labels(service=settings.service_name, result="invalid").inc()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OrderNotFound as exc:
        webhook_requests_total.labels(service=settings.service_name, result="unknown_ref").inc()
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    webhook_requests_total.labels(service=settings.service_name, result="accepted").inc()
    if outcome.should_process:
        background_tasks.add_task(processor.process_order, outcome.order_id)
    return {"ok": True}


@app.post(f"{PREFIX}/admin/orders/{{order_id}}/resume")
async def resume_order(order_id: str, x_api_key: str | None = Header(default=None)):
    """Clear a held error and re-run the processor for one order."""

    enforce_api_key(x_api_key)
    try:
        status = await processor.resume_order(order_id)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc
    return {"orderId": order_id, "status": status}


@app.post(f"{PREFIX}/admin/reconcile")
async def reconcile(x_api_key: str | None = Header(default=None)):
    """Run one reconciliation sweep now."""

    enforce_api_key(x_api_key)
    return await sweep.run_once()


@app.post(f"{PREFIX}/admin/ouis/sync")
async def sync_ouis(x_api_key: str | None = Header(default=None)):
    """Refresh the OUI directory from the Helium entities API."""

    enforce_api_key(x_api_key)
    try:
        orgs = await fetch_ouis_from_api(settings.oui_api_url)
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("oui_sync_failed: %s", exc)
        raise HTTPException(status_code=502, detail="OUI registry unavailable") from exc
    return {"synced": directory.upsert_ouis(orgs)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
