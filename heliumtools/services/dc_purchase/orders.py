"""Order service: the single writer for DC purchase order state.

Every status change goes through `update_status`, which validates the transition,
writes only allow-listed columns, bumps `state_version` under an optimistic
guard, and appends a `STATUS_CHANGE` event in the same transaction.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from sqlalchemy import or_, select, update

from heliumtools.common.logging import logger
from heliumtools.common.metrics import orders_created_total
from heliumtools.common.state_machine import NON_TERMINAL_STATUSES, validate_transition
from heliumtools.services.dc_purchase.models import Order, OrderEvent
from heliumtools.services.dc_purchase.schemas import CheckoutOpened, OrderUpdate


# Columns `update_status` may write besides status/updated_at/state_version.
ALLOWED_EXTRA_COLUMNS = frozenset(
    {
        "coinbase_transaction_id",
        "usdc_amount_received",
        "usdc_signature",
        "hnt_amount_received",
        "jupiter_quote_json",
        "swap_tx_sig",
        "mint_tx_sigs",
        "dc_minted",
        "delegate_tx_sig",
        "dc_delegated",
        "error_code",
        "error_message",
    }
)

PARTNER_REF_MAX_LENGTH = 48


class InvalidAmount(ValueError):
    """Fiat amount is missing, malformed, or outside the configured bounds."""


class BeneficiaryNotFound(LookupError):
    """OUI is unknown or has no payer/escrow on record."""


class OrderNotFound(LookupError):
    """No order with the given id or correlation reference."""


class StaleOrderState(RuntimeError):
    """A conditional status write lost to a concurrent invocation."""


@dataclass(frozen=True)
class Beneficiary:
    oui: int
    payer: str
    escrow: str


def build_partner_ref(order_id: str) -> str:
    return f"dc_{order_id}"[:PARTNER_REF_MAX_LENGTH]


class OrderService:
    """CRUD and status transitions over the order ledger store."""

    def __init__(
        self,
        session_factory,
        directory,
        min_usd: float = 5,
        max_usd: float = 1000,
        service_name: str = "dc-purchase",
    ) -> None:
        self.session_factory = session_factory
        self.directory = directory
        self.min_usd = Decimal(str(min_usd))
        self.max_usd = Decimal(str(max_usd))
        self.service_name = service_name

    def resolve_beneficiary(self, oui: int) -> Beneficiary:
        record = self.directory.get(oui)
        if record is None or not record.payer or not record.escrow:
            raise BeneficiaryNotFound(f"OUI {oui} not found")
        return Beneficiary(oui=record.oui, payer=record.payer, escrow=record.escrow)

    def validate_amount(self, fiat_amount) -> Decimal:
        try:
            amount = Decimal(str(fiat_amount))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmount("USD amount required") from exc
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount("USD amount required")
        if amount < self.min_usd:
            raise InvalidAmount(f"Minimum purchase is ${self.min_usd}")
        if amount > self.max_usd:
            raise InvalidAmount(f"Maximum purchase is ${self.max_usd}")
        return amount

    def create_order(self, oui: int, beneficiary: Beneficiary, fiat_amount, email: str | None = None) -> str:
        """Persist a new order in `created` and return its id."""

        amount = self.validate_amount(fiat_amount)
        order_id = str(uuid4())
        with self.session_factory() as db:
            db.add(
                Order(
                    id=order_id,
                    oui=oui,
                    payer=beneficiary.payer,
                    escrow=beneficiary.escrow,
                    usd_requested=str(amount),
                    email=email or None,
                    status="created",
                    state_version=0,
                    coinbase_partner_user_ref=build_partner_ref(order_id),
                )
            )
            db.flush()
            db.add(OrderEvent(order_id=order_id, type="STATUS_CHANGE", payload={"status": "created"}))
            db.commit()
        orders_created_total.labels(service=self.service_name).inc()
        logger.info("order_created order_id=%s oui=%s usd=%s", order_id, oui, amount)
        return order_id

    async def open_checkout(
        self,
        order_id: str,
        gateway,
        redirect_base_url: str,
        client_ip: str | None = None,
    ) -> str:
        """Issue a hosted checkout session and move the order to `onramp_started`.

        Falls back to the order status page when the gateway is unavailable so the
        buyer always gets a usable URL.
        """

        order = self.get_order(order_id)
        redirect_url = f"{redirect_base_url.rstrip('/')}/{order_id}"
        checkout_url = None
        if gateway is not None:
            checkout_url = await gateway.create_checkout_session(
                fiat_amount=order.usd_requested,
                partner_user_ref=order.coinbase_partner_user_ref,
                redirect_url=redirect_url,
                client_ip=client_ip,
            )
        if not checkout_url:
            logger.warning("checkout_session_unavailable order_id=%s fallback=%s", order_id, redirect_url)
            checkout_url = redirect_url
        self.update_status(order_id, "onramp_started", CheckoutOpened(), expected_status="created")
        return checkout_url

    def _filter_columns(self, order_id: str, fields) -> dict:
        if fields is None:
            return {}
        if isinstance(fields, OrderUpdate):
            fields = fields.columns()
        if not isinstance(fields, Mapping):
            raise TypeError(f"unsupported order update: {type(fields).__name__}")
        columns = {}
        for key, value in fields.items():
            if key not in ALLOWED_EXTRA_COLUMNS:
                logger.warning("update_status_ignored_column order_id=%s column=%s", order_id, key)
                continue
            columns[key] = value
        return columns

    def update_status(
        self,
        order_id: str,
        new_status: str,
        fields: OrderUpdate | Mapping | None = None,
        expected_status: str | None = None,
    ) -> Order:
        """Apply one validated status write and append its audit event.

        Writes are guarded by `(id, status, state_version)` so a concurrent writer
        that already moved the order makes this call fail with `StaleOrderState`
        instead of silently overwriting.
        """

        columns = self._filter_columns(order_id, fields)
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            from_status = order.status
            current_version = order.state_version
            if expected_status is not None and from_status != expected_status:
                raise StaleOrderState(
                    f"order {order_id} is {from_status}, expected {expected_status}"
                )
            validate_transition(from_status, new_status)
            values = dict(columns)
            if new_status != from_status:
                # Moving forward supersedes any error held at the previous status.
                values = {"error_code": None, "error_message": None, **columns}

            result = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == from_status,
                    Order.state_version == current_version,
                )
                .values(
                    status=new_status,
                    state_version=current_version + 1,
                    updated_at=datetime.now(timezone.utc),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleOrderState(
                    f"optimistic concurrency conflict for order {order_id} "
                    f"(expected version {current_version})"
                )
            db.add(
                OrderEvent(
                    order_id=order_id,
                    type="STATUS_CHANGE",
                    payload={"from": from_status, "status": new_status, "extra": columns},
                )
            )
            db.commit()
            db.refresh(order)
            return order

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return order

    def find_by_partner_ref(self, partner_ref: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order).where(Order.coinbase_partner_user_ref == partner_ref).limit(1)
            ).scalar_one_or_none()

    def list_non_terminal_orders(self) -> list[Order]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order).where(Order.status.in_(NON_TERMINAL_STATUSES)).order_by(Order.created_at)
                ).scalars()
            )

    def record_event(self, order_id: str, event_type: str, payload: dict | None = None) -> None:
        with self.session_factory() as db:
            db.add(OrderEvent(order_id=order_id, type=event_type, payload=payload or {}))
            db.commit()

    def list_events(self, order_id: str) -> list[OrderEvent]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.created_at)
                ).scalars()
            )

    def claim(self, order_id: str, lease_seconds: int) -> str | None:
        """Take the processing lease; returns a token, or None when another run holds it."""

        token = uuid4().hex
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=lease_seconds)
        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    or_(Order.claim_token.is_(None), Order.claimed_at < stale_before),
                )
                .values(claim_token=token, claimed_at=now, updated_at=Order.updated_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return token if result.rowcount == 1 else None

    def release(self, order_id: str, token: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(Order)
                .where(Order.id == order_id, Order.claim_token == token)
                .values(claim_token=None, claimed_at=None, updated_at=Order.updated_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def renew_claim(self, order_id: str, token: str) -> bool:
        """Extend a held lease; False means the lease lapsed and another run took it."""

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.claim_token == token)
                .values(claimed_at=datetime.now(timezone.utc), updated_at=Order.updated_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return result.rowcount == 1
