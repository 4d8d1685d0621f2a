"""Onramp webhook intake: authenticate, correlate, record, confirm payment."""

import json
from dataclasses import dataclass

from heliumtools.common.logging import logger
from heliumtools.common.state_machine import has_reached
from heliumtools.services.dc_purchase.orders import OrderNotFound, OrderService, StaleOrderState
from heliumtools.services.dc_purchase.schemas import PaymentConfirmed


class WebhookUnauthorized(Exception):
    """Missing, invalid, or expired signature."""


class WebhookInvalid(ValueError):
    """Body is not JSON or carries no correlation reference."""


@dataclass(frozen=True)
class WebhookOutcome:
    order_id: str
    event_status: str | None
    payment_confirmed: bool

    @property
    def should_process(self) -> bool:
        return self.payment_confirmed


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


def extract_fields(payload: dict) -> dict:
    """Pull the fields we act on from either the nested or the flat event shape."""

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    crypto = data.get("crypto") if isinstance(data.get("crypto"), dict) else {}
    return {
        "partner_ref": _first(data.get("partner_user_ref"), payload.get("partnerUserRef"), payload.get("partner_user_ref")),
        "status": _first(data.get("status"), payload.get("status")),
        "transaction_id": _first(data.get("transaction_id"), payload.get("transaction_id")),
        "usdc_amount": _first(crypto.get("amount"), payload.get("crypto_amount")),
        "tx_hash": _first(data.get("tx_hash"), crypto.get("tx_hash"), payload.get("tx_hash")),
    }


class WebhookIntake:
    def __init__(self, orders: OrderService, gateway) -> None:
        self.orders = orders
        self.gateway = gateway

    def handle(self, raw_body: bytes, timestamp: str | None, signature: str | None) -> WebhookOutcome:
        if not self.gateway.verify_inbound_signature(raw_body, timestamp, signature):
            raise WebhookUnauthorized("invalid signature")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookInvalid("body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise WebhookInvalid("body must be a JSON object")

        fields = extract_fields(payload)
        partner_ref = fields["partner_ref"]
        if not partner_ref:
            raise WebhookInvalid("missing ref")

        order = self.orders.find_by_partner_ref(str(partner_ref))
        if order is None:
            raise OrderNotFound(f"no order for reference {partner_ref}")

        self.orders.record_event(order.id, "COINBASE_EVENT", payload)
        event_status = fields["status"]
        logger.info("coinbase_webhook_received order_id=%s status=%s", order.id, event_status)

        if not event_status or str(event_status).lower() != "completed":
            return WebhookOutcome(order_id=order.id, event_status=event_status, payment_confirmed=False)
        if has_reached(order.status, "payment_confirmed"):
            logger.info("coinbase_webhook_duplicate order_id=%s status=%s", order.id, order.status)
            return WebhookOutcome(order_id=order.id, event_status=event_status, payment_confirmed=False)

        usdc_amount = fields["usdc_amount"]
        try:
            self.orders.update_status(
                order.id,
                "payment_confirmed",
                PaymentConfirmed(
                    coinbase_transaction_id=str(fields["transaction_id"]) if fields["transaction_id"] else None,
                    usdc_amount_received=str(usdc_amount) if usdc_amount is not None else None,
                    usdc_signature=str(fields["tx_hash"]) if fields["tx_hash"] else None,
                ),
                expected_status=order.status,
            )
        except StaleOrderState:
            logger.info("coinbase_webhook_raced order_id=%s", order.id)
            return WebhookOutcome(order_id=order.id, event_status=event_status, payment_confirmed=False)
        logger.info("payment_confirmed order_id=%s usdc=%s", order.id, usdc_amount)
        return WebhookOutcome(order_id=order.id, event_status=event_status, payment_confirmed=True)
