"""Order processor: drives a paid order through swap, mint and delegation.

Each invocation claims the order, then loops over `PROCESS_TRANSITIONS`,
re-reading persisted status before every step and committing the next status
before starting the following one. A failing step holds the order at its
current status with the error recorded, so the next invocation resumes from
exactly that step.
"""

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from heliumtools.adapters.constants import USDC_MINT
from heliumtools.adapters.data_credits import delegate_credits, mint_credits
from heliumtools.adapters.jupiter import SwapFailed, execute_swap_with_retry, usdc_to_base_units
from heliumtools.common.logging import logger, order_id_ctx
from heliumtools.common.metrics import order_e2e_seconds, order_step_duration_seconds, order_steps_total
from heliumtools.common.state_machine import PROCESS_TRANSITIONS, TERMINAL_STATUS
from heliumtools.common.tracing import order_step_span
from heliumtools.services.dc_purchase.orders import OrderNotFound, OrderService, StaleOrderState
from heliumtools.services.dc_purchase.schemas import (
    Completed,
    DelegationCompleted,
    ErrorCleared,
    MintCompleted,
    OrderUpdate,
    StepFailed,
    SwapCompleted,
    UsdcVerified,
)


PROCESSING_ERROR = "processing_error"

# Statuses that legitimately have no processor step.
IDLE_STATUSES = ("created", "onramp_started", TERMINAL_STATUS)


class TreasuryNotConfigured(RuntimeError):
    pass


class UsdcNotReceived(RuntimeError):
    pass


@dataclass(frozen=True)
class SwapPolicy:
    max_attempts: int = 3
    slippage_bps: int = 100
    retry_delay_seconds: float = 2.0
    confirm_timeout_seconds: float = 60.0


class OrderProcessor:
    """Runs the processor-owned part of the order state machine."""

    def __init__(
        self,
        orders: OrderService,
        chain,
        jupiter,
        treasury,
        swap_policy: SwapPolicy | None = None,
        max_iterations: int = 10,
        step_delay_seconds: float = 1.0,
        lease_seconds: int = 300,
        verify_treasury_usdc: bool = False,
        service_name: str = "dc-purchase",
    ) -> None:
        self.orders = orders
        self.chain = chain
        self.jupiter = jupiter
        self.treasury = treasury
        self.swap_policy = swap_policy or SwapPolicy()
        self.max_iterations = max_iterations
        self.step_delay_seconds = step_delay_seconds
        self.lease_seconds = lease_seconds
        self.verify_treasury_usdc = verify_treasury_usdc
        self.service_name = service_name

    async def process_order(self, order_id: str) -> str | None:
        """Advance the order as far as it will go; returns the status it stopped at."""

        try:
            order = self.orders.get_order(order_id)
        except OrderNotFound:
            logger.warning("order_processing_skipped reason=not_found order_id=%s", order_id)
            return None
        if order.status not in PROCESS_TRANSITIONS:
            if order.status not in IDLE_STATUSES:
                logger.warning("order_unexpected_status order_id=%s status=%s", order_id, order.status)
            return order.status

        token = self.orders.claim(order_id, self.lease_seconds)
        if token is None:
            logger.info("order_processing_skipped reason=claimed order_id=%s", order_id)
            return order.status

        ctx_token = order_id_ctx.set(order_id)
        lease_lost = asyncio.Event()
        heartbeat = asyncio.create_task(self._keep_lease(order_id, token, lease_lost))
        try:
            return await self._drive(order_id, lease_lost)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            self.orders.release(order_id, token)
            order_id_ctx.reset(ctx_token)

    async def resume_order(self, order_id: str) -> str | None:
        """Clear a held error and re-run the driving loop."""

        order = self.orders.get_order(order_id)
        self.orders.update_status(order_id, order.status, ErrorCleared())
        logger.info("order_resumed order_id=%s status=%s", order_id, order.status)
        return await self.process_order(order_id)

    async def _keep_lease(self, order_id: str, token: str, lease_lost: asyncio.Event) -> None:
        """Renew the lease well inside its window for as long as the run lasts."""

        interval = max(self.lease_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            if not self.orders.renew_claim(order_id, token):
                logger.warning("order_lease_lost order_id=%s", order_id)
                lease_lost.set()
                return

    async def _drive(self, order_id: str, lease_lost: asyncio.Event) -> str | None:
        for _ in range(self.max_iterations):
            if lease_lost.is_set():
                return None
            order = self.orders.get_order(order_id)
            current = order.status
            next_status = PROCESS_TRANSITIONS.get(current)
            if next_status is None:
                if current not in IDLE_STATUSES:
                    logger.warning("order_unexpected_status order_id=%s status=%s", order_id, current)
                return current

            logger.info("order_step_started order_id=%s from=%s to=%s", order_id, current, next_status)
            started = time.perf_counter()
            try:
                with order_step_span(order_id, current, next_status):
                    fields = await self._run_step(order)
                if lease_lost.is_set():
                    logger.error("order_step_result_dropped reason=lease_lost order_id=%s status=%s", order_id, current)
                    return None
                self.orders.update_status(order_id, next_status, fields, expected_status=current)
            except StaleOrderState as exc:
                logger.info("order_processing_superseded order_id=%s detail=%s", order_id, exc)
                return None
            except Exception as exc:
                order_steps_total.labels(service=self.service_name, step=current, result="failure").inc()
                logger.exception("order_step_failed order_id=%s status=%s", order_id, current)
                self._hold(order, exc)
                return current

            order_steps_total.labels(service=self.service_name, step=current, result="success").inc()
            order_step_duration_seconds.labels(service=self.service_name, step=current).observe(
                time.perf_counter() - started
            )
            if next_status == TERMINAL_STATUS:
                self._observe_e2e(order)
                logger.info("order_completed order_id=%s", order_id)
                return next_status
            await asyncio.sleep(self.step_delay_seconds)

        logger.error("order_processing_max_iterations order_id=%s limit=%s", order_id, self.max_iterations)
        return None

    def _hold(self, order, exc: Exception) -> None:
        """Keep the order at its status with the error attached, and log the failure event."""

        message = str(exc) or type(exc).__name__
        try:
            self.orders.update_status(
                order.id,
                order.status,
                StepFailed(error_code=PROCESSING_ERROR, error_message=message),
                expected_status=order.status,
            )
        except StaleOrderState:
            logger.warning("order_error_hold_superseded order_id=%s", order.id)
        payload = {"stage": order.status, "message": message, "error_type": type(exc).__name__}
        if isinstance(exc, SwapFailed):
            payload["attempts"] = exc.attempts
        self.orders.record_event(order.id, "ERROR", payload)

    def _observe_e2e(self, order) -> None:
        if order.created_at is None:
            return
        created_at = order.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        order_e2e_seconds.labels(service=self.service_name).observe(elapsed)

    def _require_treasury(self):
        if self.treasury is None:
            raise TreasuryNotConfigured("TREASURY_PRIVATE_KEY is not configured")
        return self.treasury

    def _milestone(self, order_id: str, stage: str, **payload) -> None:
        self.orders.record_event(order_id, "ONCHAIN_EVENT", {"stage": stage, **payload})

    async def _run_step(self, order) -> OrderUpdate:
        handler = {
            "payment_confirmed": self._verify_usdc,
            "usdc_verified": self._swap,
            "swapping": self._mint,
            "minting_dc": self._delegate,
            "delegating": self._complete,
        }[order.status]
        return await handler(order)

    async def _verify_usdc(self, order) -> OrderUpdate:
        usdc_amount = order.usdc_amount_received or order.usd_requested
        details = {"usdcAmount": usdc_amount}
        if self.verify_treasury_usdc:
            treasury = self._require_treasury()
            balance = await self.chain.get_token_balance(treasury.ata(USDC_MINT))
            details["treasuryUsdcBalance"] = str(balance)
            if balance < usdc_to_base_units(usdc_amount):
                raise UsdcNotReceived(f"Treasury USDC balance {balance} is below {usdc_amount} USDC")
        self._milestone(order.id, "usdc_verified", **details)
        return UsdcVerified(usdc_amount_received=str(usdc_amount))

    async def _swap(self, order) -> OrderUpdate:
        treasury = self._require_treasury()
        try:
            usdc_amount = Decimal(str(order.usdc_amount_received or order.usd_requested))
        except InvalidOperation as exc:
            raise ValueError("Invalid USDC amount for swap") from exc
        if not usdc_amount.is_finite() or usdc_amount <= 0:
            raise ValueError("Invalid USDC amount for swap")

        self._milestone(order.id, "swap_started", usdcAmount=str(usdc_amount))
        policy = self.swap_policy
        result = await execute_swap_with_retry(
            self.jupiter,
            self.chain,
            treasury,
            usdc_amount,
            max_attempts=policy.max_attempts,
            slippage_bps=policy.slippage_bps,
            retry_delay_seconds=policy.retry_delay_seconds,
            confirm_timeout_seconds=policy.confirm_timeout_seconds,
            service_name=self.service_name,
        )
        self._milestone(
            order.id,
            "swap_completed",
            signature=result.signature,
            hntReceived=str(result.hnt_received),
            attempts=result.attempts,
        )
        return SwapCompleted(
            swap_tx_sig=result.signature,
            jupiter_quote_json=result.quote_json,
            hnt_amount_received=str(result.hnt_received),
        )

    async def _mint(self, order) -> OrderUpdate:
        treasury = self._require_treasury()
        hnt_amount = int(order.hnt_amount_received or 0)
        if hnt_amount <= 0:
            raise ValueError("No HNT available for minting DC")

        self._milestone(order.id, "mint_started", hntAmount=str(hnt_amount))
        result = await mint_credits(self.chain, treasury, hnt_amount)
        self._milestone(order.id, "mint_completed", signature=result.signature, dcMinted=str(result.dc_minted))
        return MintCompleted(mint_tx_sigs=[result.signature], dc_minted=str(result.dc_minted))

    async def _delegate(self, order) -> OrderUpdate:
        treasury = self._require_treasury()
        dc_amount = int(order.dc_minted or 0)
        if dc_amount <= 0:
            raise ValueError("No DC available for delegation")

        self._milestone(order.id, "delegate_started", dcAmount=str(dc_amount), routerKey=order.payer)
        result = await delegate_credits(self.chain, treasury, dc_amount, order.payer)
        self._milestone(
            order.id,
            "delegate_completed",
            signature=result.signature,
            escrowBalance=str(result.escrow_balance),
        )
        return DelegationCompleted(delegate_tx_sig=result.signature, dc_delegated=str(dc_amount))

    async def _complete(self, order) -> OrderUpdate:
        self._milestone(order.id, "complete", dcDelegated=order.dc_delegated)
        return Completed()
