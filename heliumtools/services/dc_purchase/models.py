"""DC purchase database models.

This DB is the source of truth for order state, the per-order audit log, and the
OUI directory used to resolve beneficiaries.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from heliumtools.common.db import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Order(Base):
    """Current state of a DC purchase order aggregate."""

    __tablename__ = "dc_purchase_orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    oui: Mapped[int] = mapped_column(Integer, index=True)
    payer: Mapped[str] = mapped_column(String)
    escrow: Mapped[str] = mapped_column(String)
    usd_requested: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coinbase_partner_user_ref: Mapped[str] = mapped_column(String(48), unique=True, index=True)
    coinbase_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    usdc_amount_received: Mapped[str | None] = mapped_column(String, nullable=True)
    usdc_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    hnt_amount_received: Mapped[str | None] = mapped_column(String, nullable=True)
    jupiter_quote_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    swap_tx_sig: Mapped[str | None] = mapped_column(String, nullable=True)
    mint_tx_sigs: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    dc_minted: Mapped[str | None] = mapped_column(String, nullable=True)
    delegate_tx_sig: Mapped[str | None] = mapped_column(String, nullable=True)
    dc_delegated: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OrderEvent(Base):
    """Immutable audit trail of transitions, chain milestones, provider events and errors."""

    __tablename__ = "dc_purchase_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("dc_purchase_orders.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    type: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JSONType)


class Oui(Base):
    """Helium OUI directory row synced from the registry API."""

    __tablename__ = "ouis"

    oui: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    owner: Mapped[str | None] = mapped_column(String, nullable=True)
    payer: Mapped[str | None] = mapped_column(String, nullable=True)
    escrow: Mapped[str | None] = mapped_column(String, nullable=True)
    delegate_keys: Mapped[list] = mapped_column(JSONType, default=list)
    locked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OuiBalance(Base):
    """Daily escrow DC balance snapshot for one OUI."""

    __tablename__ = "oui_balances"
    __table_args__ = (UniqueConstraint("oui", "date", name="uq_oui_balance_day"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    oui: Mapped[int] = mapped_column(Integer, index=True)
    date: Mapped[str] = mapped_column(String(10))
    balance_dc: Mapped[str] = mapped_column(String)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
