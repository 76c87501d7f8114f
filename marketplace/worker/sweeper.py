"""Expiry sweep: cancel unpaid orders past their deadline and tidy OTP intents.

Each pass is safe to repeat. The selection queries only match work that is still
outstanding (activated and unlocked, pending and lapsed, claimed and stale, refunded
and unsettled), so a second pass right after the first finds nothing.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta

from marketplace.core.config import get_settings
from marketplace.core.exceptions import AppError, StateConflictError
from marketplace.core.logging import get_logger
from marketplace.services.container import Services

log = get_logger(__name__)


@dataclass
class SweepReport:
    expired_orders: int = 0
    skipped_orders: int = 0
    failed_orders: int = 0
    expired_intents: int = 0
    reconciled_claims: int = 0
    released_claims: int = 0
    settled_refunds: int = 0
    failed_refunds: int = 0

    @property
    def changed(self) -> bool:
        return any(asdict(self).values())


class ExpirySweeper:
    def __init__(
        self,
        services: Services,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        claim_timeout_minutes: int | None = None,
    ) -> None:
        settings = get_settings()
        self.services = services
        self.interval = interval_seconds or settings.sweep_interval_seconds
        self.batch_size = batch_size or settings.sweep_batch_size
        self.claim_timeout = timedelta(minutes=claim_timeout_minutes or settings.claim_timeout_minutes)
        self._task: asyncio.Task | None = None

    @property
    def flows(self):
        s = self.services
        return (s.payments, s.deposits, s.withdrawals)

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        now = self.services.clock()
        await self._expire_orders(now, report)
        for flow in self.flows:
            report.expired_intents += await self.services.gate.expire_lapsed(flow.model, now, self.batch_size)
        await self._reconcile_claims(now, report)
        await self._settle_refunds(report)
        if report.changed:
            log.info("sweep_completed", **asdict(report))
        return report

    async def _expire_orders(self, now, report: SweepReport) -> None:
        store = self.services.store
        for order in await store.find_expired_unpaid(now, self.batch_size):
            try:
                await self.services.orders.expire(order.id)
                report.expired_orders += 1
                log.info("order_expired", order_id=order.id, deadline=order.payment_deadline.isoformat())
            except StateConflictError:
                # Paid, locked or cancelled since it was selected
                report.skipped_orders += 1
            except Exception as e:
                report.failed_orders += 1
                log.exception("order_expiry_failed", order_id=order.id, reason=str(e)[:500])

    async def _reconcile_claims(self, now, report: SweepReport) -> None:
        """Finish or release claims left behind by a verify call that never resolved."""
        store = self.services.store
        for flow in self.flows:
            for intent in await store.find_stale_claims(flow.model, now - self.claim_timeout, self.batch_size):
                try:
                    await flow.settle(intent)
                    report.reconciled_claims += 1
                    log.info("claim_reconciled", kind=flow.model.kind, intent_id=intent.id)
                except AppError as e:
                    report.released_claims += 1
                    log.info("claim_released", kind=flow.model.kind, intent_id=intent.id, reason=e.message)
                except Exception as e:
                    log.exception("claim_reconcile_failed", kind=flow.model.kind, intent_id=intent.id, reason=str(e)[:500])

    async def _settle_refunds(self, report: SweepReport) -> None:
        for order in await self.services.store.find_unsettled_refunds(self.batch_size):
            try:
                await self.services.orders.settle_refund(order)
                report.settled_refunds += 1
            except Exception as e:
                report.failed_refunds += 1
                log.exception("refund_failed", order_id=order.id, reason=str(e)[:500])

    async def run_forever(self) -> None:
        log.info("sweeper_started", interval_seconds=self.interval)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                log.exception("sweep_failed", reason=str(e)[:500])
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("sweeper_stopped")
