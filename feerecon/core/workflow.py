# feerecon/core/workflow.py

"""
Reconciliation workflow: commit locally, mirror to the cache, push to the CRM.

Local state always moves first and is never rolled back. The cache mirror and
the CRM push are best-effort follow-ups; anything that does not reach the CRM
stays on the session backlog for the next sync_pending() call.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING
import logging

from feerecon.models import (
    Expectation,
    Match,
    MatchMethod,
    Payment,
    PaymentLineItem,
    PropagationReport,
    PropagationState,
    SyncReport,
    SyncState,
)
from feerecon.core.data_check import approve_condition
from feerecon.core.errors import PreconditionViolation, RateLimited
from feerecon.core.prescreening import Prescreener
from feerecon.core.session import ReconciliationSession
from feerecon.core.sync import (
    DEFAULT_BATCH_DELAY_SECONDS,
    DEFAULT_RETRY_AFTER_SECONDS,
    LINE_ITEMS_MODULE,
    MAX_BATCH_SIZE,
    CrmGateway,
    MatchSyncer,
    StatusPropagator,
)
from feerecon.integrations.zoho import fetch_reconciliation_data

if TYPE_CHECKING:
    from feerecon.database import CacheStore

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReconciliationWorkflow:
    """Drives one session against the CRM and the cache mirror."""

    def __init__(
        self,
        session: ReconciliationSession,
        client: CrmGateway,
        cache: Optional["CacheStore"] = None,
        batch_size: int = MAX_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        read_delay_seconds: float = 0.2,
        default_retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.client = client
        self.cache = cache
        self.read_delay_seconds = read_delay_seconds
        self.sleep = sleep

        batching = dict(
            batch_size=batch_size,
            batch_delay_seconds=batch_delay_seconds,
            default_retry_after_seconds=default_retry_after_seconds,
            sleep=sleep,
        )
        self.syncer = MatchSyncer(client, **batching)
        self.propagator = StatusPropagator(client, **batching)

    @classmethod
    def from_settings(cls, session, client, cache, settings) -> "ReconciliationWorkflow":
        return cls(
            session,
            client,
            cache,
            batch_size=settings.sync_batch_size,
            batch_delay_seconds=settings.sync_batch_delay_seconds,
            read_delay_seconds=settings.read_delay_seconds,
            default_retry_after_seconds=settings.default_retry_after_seconds,
        )

    # ============================================
    # Loading
    # ============================================

    async def download(self) -> tuple[list[Payment], list[Expectation]]:
        """Replace the working set with a fresh CRM download."""
        if self.session.has_unsynced:
            raise PreconditionViolation(
                f"{len(self.session.unsynced_units())} matches have not been synced; "
                "sync them before downloading new data"
            )

        payments, expectations = await fetch_reconciliation_data(
            self.client, self.read_delay_seconds, self.sleep
        )
        self.session.load(payments, expectations)

        if self.cache is not None:
            await self.cache.save_all(payments, expectations)
            await self.cache.update_sync_status(
                last_download_at=_now_iso(),
                is_locked=False,
                lock_reason=None,
                pending_match_count=0,
            )

        return payments, expectations

    async def restore(self) -> bool:
        """Rebuild the session from the cache, including unsynced matches."""
        if self.cache is None:
            return False

        loaded = await self.cache.load_all()
        if loaded is None:
            return False

        payments, expectations = loaded
        self.session.load(payments, expectations)

        units = await self.cache.get_unsynced_pending_matches() or []
        for unit in units:
            self.session.sync_backlog[unit.sync_id] = unit

        logger.info(f"Restored session with {len(units)} unsynced matches")
        return True

    # ============================================
    # Commit + sync
    # ============================================

    async def confirm_and_sync(
        self,
        notes: str = "",
        actor: Optional[str] = None,
    ) -> tuple[Match, SyncReport]:
        """Commit the staged pairs as a manual match, then push."""
        payment = self.session.selected_payment
        before = set(self.session.sync_backlog)

        match = self.session.confirm(notes=notes, method=MatchMethod.MANUAL, actor=actor)

        await self._mirror_commit(payment, match, before)
        return match, await self.sync_pending()

    async def confirm_prescreening(
        self,
        prescreener: Prescreener,
        actor: Optional[str] = None,
    ) -> tuple[Match, SyncReport]:
        payment = self.session.selected_payment
        before = set(self.session.sync_backlog)

        match = prescreener.confirm(actor=actor)

        await self._mirror_commit(payment, match, before)
        return match, await self.sync_pending()

    async def _mirror_commit(self, payment: Payment, match: Match, before: set[str]) -> None:
        if self.cache is None:
            return

        for detail in match.details:
            await self.cache.update_line_item(payment.get_line_item(detail.line_item_id))
            await self.cache.update_expectation(self.session.get_expectation(detail.expectation_id))
        await self.cache.update_payment(payment)
        await self._mirror_new_units(before)

    async def _mirror_new_units(self, before: set[str]) -> None:
        if self.cache is None:
            return
        for sync_id, unit in self.session.sync_backlog.items():
            if sync_id not in before:
                await self.cache.save_pending_match(unit)

    async def sync_pending(self) -> SyncReport:
        """
        Push every unsynced unit, then the dependent status updates.

        Propagation is skipped when the primary phase was rate limited; it
        will run on the next call.
        """
        units = self.session.unsynced_units()
        synced_ids: list[str] = []

        def on_state(record, state, remote_id, message):
            self.session.set_unit_state(record.sync_id, state, remote_id, message)
            if state == SyncState.CONFIRMED:
                synced_ids.append(record.sync_id)

        async def on_chunk_synced(sync_ids):
            if self.cache is not None:
                await self.cache.mark_synced(sync_ids)

        report = await self.syncer.sync_matches(
            [u.record for u in units], on_state, on_chunk_synced
        )

        if self.cache is not None:
            await self.cache.update_sync_status(
                last_sync_at=_now_iso(),
                pending_match_count=len(self.session.unsynced_units()),
            )

        if report.rate_limited:
            logger.warning(
                f"Sync halted by rate limit after {report.success_count} records; "
                f"status propagation deferred"
            )
            return report

        report.propagation = await self.retry_propagation()

        if not report.propagation.rate_limited:
            await self._push_payment_statuses(synced_ids)

        return report

    async def retry_propagation(self) -> PropagationReport:
        """Push line item / expectation statuses for every outstanding unit."""
        units = self.session.propagation_queue()
        if not units:
            return PropagationReport()

        report = await self.propagator.propagate([u.record for u in units])

        if report.rate_limited:
            # Units stay queued for the next retry
            return report

        failed_lines = set(report.failed_line_item_ids)
        failed_expectations = set(report.failed_expectation_ids)

        degraded, propagated = [], []
        for unit in units:
            record = unit.record
            if record.line_item_zoho_id in failed_lines or (
                record.expectation_zoho_id and record.expectation_zoho_id in failed_expectations
            ):
                degraded.append(unit.sync_id)
            else:
                propagated.append(unit.sync_id)

        self.session.set_propagation(degraded, PropagationState.DEGRADED)
        self.session.set_propagation(propagated, PropagationState.PROPAGATED)

        return report

    async def _push_payment_statuses(self, sync_ids: list[str]) -> None:
        payment_ids = []
        for sync_id in sync_ids:
            unit = self.session.sync_backlog.get(sync_id)
            if unit is not None and unit.record.payment_id not in payment_ids:
                payment_ids.append(unit.record.payment_id)

        for payment_id in payment_ids:
            payment = self.session.get_payment(payment_id)
            if payment is None:
                continue
            try:
                await self.propagator.sync_payment_status(payment)
            except RateLimited as e:
                logger.warning(f"Payment status push rate limited, retry after {e.retry_after_seconds}s")
                return

    # ============================================
    # Single-item actions
    # ============================================

    async def approve_line_item(
        self,
        line_item_id: str,
        notes: str,
        actor: Optional[str] = None,
    ) -> tuple[PaymentLineItem, bool]:
        """Approve one line item without a match. Returns (line item, pushed to CRM)."""
        line_item = self.session.mark_line_item_approved_unmatched(line_item_id, notes, actor=actor)
        payment = self.session.selected_payment

        if self.cache is not None:
            await self.cache.update_line_item(line_item)
            await self.cache.update_payment(payment)

        try:
            pushed = await self.propagator.sync_line_item_status(line_item)
        except RateLimited as e:
            logger.warning(f"Line item status push rate limited, retry after {e.retry_after_seconds}s")
            pushed = False

        return line_item, pushed

    async def approve_data_condition(
        self,
        condition_id: str,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> tuple[list[PaymentLineItem], SyncReport]:
        before = set(self.session.sync_backlog)
        approved = approve_condition(self.session, condition_id, notes=notes, actor=actor)

        if self.cache is not None and approved:
            for line_item in approved:
                await self.cache.update_line_item(line_item)
            await self.cache.update_payment(self.session.selected_payment)
            await self._mirror_new_units(before)

        return approved, await self.sync_pending()

    async def close_payment(self, notes: str, actor: Optional[str] = None) -> tuple[Payment, bool]:
        """Mark the selected payment fully reconciled and push it to the CRM."""
        payment = self.session.selected_payment
        newly_approved = [li.id for li in payment.unmatched_line_items] if payment else []

        payment = self.session.mark_payment_fully_reconciled(notes, actor=actor)
        approved = [payment.get_line_item(li_id) for li_id in newly_approved]

        if self.cache is not None:
            for line_item in approved:
                await self.cache.update_line_item(line_item)
            await self.cache.update_payment(payment)

        try:
            if approved:
                result = await self.propagator.update_records_batch(
                    LINE_ITEMS_MODULE,
                    [
                        {"id": li.remote_id, "Status": li.status.value, "Match_Notes": li.notes or None}
                        for li in approved
                    ],
                )
                if result.rate_limited:
                    return payment, False
            pushed = await self.propagator.sync_payment_status(payment, notes=payment.notes)
        except RateLimited as e:
            logger.warning(f"Payment close push rate limited, retry after {e.retry_after_seconds}s")
            pushed = False

        return payment, pushed

    async def invalidate(
        self,
        expectation_id: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> tuple[Expectation, bool]:
        expectation = self.session.invalidate_expectation(expectation_id, reason, actor=actor)

        if self.cache is not None:
            await self.cache.update_expectation(expectation)

        try:
            pushed = await self.propagator.sync_invalidation(expectation)
        except RateLimited as e:
            logger.warning(f"Invalidation push rate limited, retry after {e.retry_after_seconds}s")
            pushed = False

        return expectation, pushed
