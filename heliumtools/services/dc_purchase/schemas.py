"""API schemas and typed order-update variants for the DC purchase service."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Response base serialized with camelCase keys for the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(BaseModel):
    """Purchase payload accepted by `POST /orders`."""

    oui: int
    usd: Decimal
    email: str | None = Field(default=None, max_length=254)


class CreateOrderResponse(CamelModel):
    order_id: str
    checkout_url: str
    payer: str
    escrow: str
    escrow_dc_balance: str | None = None
    balance_last_updated: datetime | None = None


class BeneficiaryResponse(CamelModel):
    oui: int
    payer: str
    escrow: str
    escrow_dc_balance: str | None = None
    balance_last_updated: datetime | None = None


class OrderTxs(CamelModel):
    usdc_sig: str | None = None
    swap_sig: str | None = None
    mint_sigs: list[str] = Field(default_factory=list)
    delegate_sig: str | None = None


class OrderError(CamelModel):
    code: str
    message: str | None = None


class OrderResponse(CamelModel):
    """Public order projection returned by `GET /orders/{order_id}`."""

    order_id: str
    status: str
    oui: int
    payer: str
    escrow: str
    usd_requested: str
    usdc_amount_received: str | None = None
    hnt_amount_received: str | None = None
    dc_minted: str | None = None
    dc_delegated: str | None = None
    coinbase_transaction_id: str | None = None
    txs: OrderTxs
    error: OrderError | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            order_id=order.id,
            status=order.status,
            oui=order.oui,
            payer=order.payer,
            escrow=order.escrow,
            usd_requested=order.usd_requested,
            usdc_amount_received=order.usdc_amount_received,
            hnt_amount_received=order.hnt_amount_received,
            dc_minted=order.dc_minted,
            dc_delegated=order.dc_delegated,
            coinbase_transaction_id=order.coinbase_transaction_id,
            txs=OrderTxs(
                usdc_sig=order.usdc_signature,
                swap_sig=order.swap_tx_sig,
                mint_sigs=list(order.mint_tx_sigs or []),
                delegate_sig=order.delegate_tx_sig,
            ),
            error=OrderError(code=order.error_code, message=order.error_message) if order.error_code else None,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# Typed order updates. Each variant names exactly the columns one transition writes.


class OrderUpdate(BaseModel):
    """Base for the column set written alongside a status change."""

    model_config = ConfigDict(frozen=True)

    def columns(self) -> dict:
        return self.model_dump()


class CheckoutOpened(OrderUpdate):
    pass


class PaymentConfirmed(OrderUpdate):
    coinbase_transaction_id: str | None = None
    usdc_amount_received: str | None = None
    usdc_signature: str | None = None


class UsdcVerified(OrderUpdate):
    usdc_amount_received: str


class SwapCompleted(OrderUpdate):
    swap_tx_sig: str
    jupiter_quote_json: str
    hnt_amount_received: str


class MintCompleted(OrderUpdate):
    mint_tx_sigs: list[str]
    dc_minted: str


class DelegationCompleted(OrderUpdate):
    delegate_tx_sig: str
    dc_delegated: str


class Completed(OrderUpdate):
    pass


class StepFailed(OrderUpdate):
    error_code: str
    error_message: str


class ErrorCleared(OrderUpdate):
    error_code: None = None
    error_message: None = None
