"""Reconciliation sweep: periodically re-drive every order that is not complete."""

import asyncio

from heliumtools.common.logging import logger
from heliumtools.common.metrics import reconciliation_orders_total


class ReconciliationSweep:
    def __init__(self, orders, processor, service_name: str = "dc-purchase") -> None:
        self.orders = orders
        self.processor = processor
        self.service_name = service_name

    async def run_once(self) -> dict:
        """Invoke the processor for each non-terminal order, one at a time."""

        pending = self.orders.list_non_terminal_orders()
        summary = {"scanned": len(pending), "failed": 0}
        for order in pending:
            try:
                await self.processor.process_order(order.id)
            except Exception:
                summary["failed"] += 1
                reconciliation_orders_total.labels(service=self.service_name, result="failure").inc()
                logger.exception("reconciliation_order_failed order_id=%s", order.id)
                continue
            reconciliation_orders_total.labels(service=self.service_name, result="success").inc()
        logger.info("reconciliation_sweep_done scanned=%s failed=%s", summary["scanned"], summary["failed"])
        return summary

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("reconciliation_sweep_failed")
