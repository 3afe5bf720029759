# feerecon/core/sync.py

"""
Push confirmed matches to the CRM.

Primary records (Payment_Matches) go out in chunks of at most 100 with a fixed
pause between chunks. A rate-limit signal halts the run and surfaces the
retry-after value; a transport failure fails only its own chunk. The status
push to line items and expectations is a separate, best-effort phase that
never undoes a primary record.

Every remote call is awaited in sequence. Nothing here retries on its own.
"""

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Protocol
import logging

from feerecon.models import (
    BatchUpdateResult,
    Expectation,
    MatchRecord,
    Payment,
    PaymentLineItem,
    PropagationReport,
    RecordResult,
    SyncReport,
    SyncState,
)
from feerecon.models.money import ZERO
from feerecon.core.errors import RateLimited, TransportFailure, ValidationFailure
from feerecon.integrations.zoho_mapping import format_zoho_datetime

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
DEFAULT_BATCH_DELAY_SECONDS = 2.0
DEFAULT_RETRY_AFTER_SECONDS = 60
RATE_LIMIT_CODE = "ZOHO_RATE_LIMIT"

LINE_ITEMS_MODULE = "Bank_Payment_Lines"
EXPECTATIONS_MODULE = "Expectations"
PAYMENTS_MODULE = "Bank_Payments"

ACTOR_NAME = "Reconciliation Tool"


class CrmGateway(Protocol):
    async def invoke(self, action: str, params: dict) -> dict: ...


Sleep = Callable[[float], Awaitable[Any]]
StateCallback = Callable[[MatchRecord, SyncState, Optional[str], Optional[str]], Any]
ChunkCallback = Callable[[list[str]], Awaitable[Any]]


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _retry_after(response: dict, default: int) -> int:
    try:
        return int(response.get("retryAfterSeconds") or default)
    except (TypeError, ValueError):
        return default


def _is_rate_limited(response: dict) -> bool:
    return not response.get("success") and response.get("code") == RATE_LIMIT_CODE


class _Batcher:
    """Chunking and pacing shared by the primary and secondary phases."""

    def __init__(
        self,
        client: CrmGateway,
        batch_size: int = MAX_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        default_retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self.client = client
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.default_retry_after_seconds = default_retry_after_seconds
        self.sleep = sleep


# ============================================
# Primary records
# ============================================

class MatchSyncer(_Batcher):
    """Creates Payment_Matches records for confirmed pairs."""

    async def sync_matches(
        self,
        records: list[MatchRecord],
        on_state: Optional[StateCallback] = None,
        on_chunk_synced: Optional[ChunkCallback] = None,
    ) -> SyncReport:
        """
        Submit records in staging order.

        on_state(record, state, remote_id, message) is called for every record
        whose state changes, so the caller can mark units synced locally.
        on_chunk_synced(sync_ids) is awaited after each accepted chunk with the
        ids the CRM created, before the next chunk goes out, so a resumed run
        never resends them.
        """
        report = SyncReport(total_requested=len(records))
        if not records:
            return report

        def notify(record, state, remote_id=None, message=None):
            if on_state is not None:
                on_state(record, state, remote_id, message)

        chunks = list(_chunks(records, self.batch_size))

        for index, chunk in enumerate(chunks):
            if index > 0:
                await self.sleep(self.batch_delay_seconds)

            for record in chunk:
                notify(record, SyncState.SUBMITTED)

            report.chunks_submitted += 1

            try:
                response = await self.client.invoke(
                    "createMatchBatch",
                    {"records": [r.to_crm_params() for r in chunk]},
                )
            except TransportFailure as e:
                logger.error(f"Match batch {index + 1}/{len(chunks)} transport failure: {e}")
                for record in chunk:
                    report.results.append(RecordResult(sync_id=record.sync_id, status="error", message=str(e)))
                    notify(record, SyncState.FAILED, None, str(e))
                report.failed_count += len(chunk)
                continue

            if _is_rate_limited(response):
                report.rate_limited = True
                report.retry_after_seconds = _retry_after(response, self.default_retry_after_seconds)
                for record in chunk:
                    notify(record, SyncState.RATE_LIMITED, None, response.get("error"))
                logger.warning(
                    f"Rate limited on match batch {index + 1}/{len(chunks)}; "
                    f"halting with {len(records) - report.success_count - report.failed_count} unsent, "
                    f"retry after {report.retry_after_seconds}s"
                )
                break

            if not response.get("success"):
                message = response.get("error") or "Batch sync failed"
                logger.error(f"Match batch {index + 1}/{len(chunks)} rejected: {message}")
                for record in chunk:
                    report.results.append(RecordResult(sync_id=record.sync_id, status="error", message=message))
                    notify(record, SyncState.FAILED, None, message)
                report.failed_count += len(chunk)
                continue

            confirmed = self._apply_batch_results(chunk, response.get("data") or {}, report, notify)
            if confirmed and on_chunk_synced is not None:
                await on_chunk_synced(confirmed)

            logger.info(
                f"Match batch {index + 1}/{len(chunks)} done: "
                f"{report.success_count} succeeded, {report.failed_count} failed so far"
            )

        return report

    def _apply_batch_results(self, chunk, data: dict, report: SyncReport, notify) -> list[str]:
        by_index = {}
        for item in data.get("batchResults") or []:
            try:
                by_index[int(item.get("index"))] = item
            except (TypeError, ValueError):
                continue

        confirmed, failures = [], []
        for position, record in enumerate(chunk):
            item = by_index.get(position)
            if item is not None and item.get("status") == "success":
                remote_id = item.get("id")
                report.results.append(RecordResult(sync_id=record.sync_id, status="success", remote_id=remote_id))
                report.success_count += 1
                notify(record, SyncState.CONFIRMED, remote_id, None)
                confirmed.append(record.sync_id)
            else:
                message = (item or {}).get("message") or (item or {}).get("status") or "No result returned"
                report.results.append(RecordResult(sync_id=record.sync_id, status="error", message=message))
                report.failed_count += 1
                failures.append({"syncId": record.sync_id, "message": message})
                notify(record, SyncState.FAILED, None, message)

        if failures:
            logger.error(f"Per-record match failures (first 5): {failures[:5]}")

        return confirmed

    async def sync_match(self, record: MatchRecord) -> RecordResult:
        """
        Single-record path: create the match, then update the line item and
        the expectation. Failures of the two follow-up writes are warnings.
        """
        response = await self.client.invoke("createMatch", record.to_crm_params())

        if _is_rate_limited(response):
            raise RateLimited(
                response.get("error") or "Rate limited",
                retry_after_seconds=_retry_after(response, self.default_retry_after_seconds),
            )
        if not response.get("success"):
            raise ValidationFailure(response.get("error") or "Failed to create match record", record.sync_id)

        remote_id = _first_created_id(response.get("data"))

        line_update = await self._safe_update(
            LINE_ITEMS_MODULE, record.line_item_zoho_id, line_item_status_fields(record)
        )
        if not line_update:
            logger.warning(f"Match {record.sync_id} created but line item {record.line_item_zoho_id} not updated")

        if record.expectation_zoho_id:
            expectation_update = await self._safe_update(
                EXPECTATIONS_MODULE,
                record.expectation_zoho_id,
                expectation_status_fields(record.matched_amount),
            )
            if not expectation_update:
                logger.warning(
                    f"Match {record.sync_id} created but expectation {record.expectation_zoho_id} not updated"
                )

        return RecordResult(sync_id=record.sync_id, status="success", remote_id=remote_id)

    async def _safe_update(self, module: str, record_id: str, data: dict) -> bool:
        try:
            response = await self.client.invoke(
                "updateRecord", {"module": module, "recordId": record_id, "data": data}
            )
        except TransportFailure as e:
            logger.warning(f"Update of {module}/{record_id} failed: {e}")
            return False
        return bool(response.get("success"))


def _first_created_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        rows = data.get("data") or []
        if rows and isinstance(rows[0], dict):
            return (rows[0].get("details") or {}).get("id")
    return None


# ============================================
# Secondary status propagation
# ============================================

def line_item_status_fields(record: MatchRecord) -> dict:
    if record.expectation_zoho_id:
        return {
            "Status": "matched",
            "Matched_Expectation": {"id": record.expectation_zoho_id},
            "Match_Notes": record.notes or None,
        }
    return {
        "Status": "approved_unmatched",
        "Match_Notes": record.notes or None,
    }


def expectation_status_fields(allocated: Decimal) -> dict:
    return {
        "Status": "matched",
        "Allocated_Amount": float(allocated),
        "Remaining_Amount": 0,
    }


class StatusPropagator(_Batcher):
    """Updates Bank_Payment_Lines and Expectations after primary records land."""

    async def update_records_batch(self, module: str, records: list[dict]) -> BatchUpdateResult:
        """
        Batch update records in one module, chunked and paced like the primary
        phase. A rate-limit signal stops the run and is reported, not raised.
        """
        result = BatchUpdateResult()
        chunks = list(_chunks(records, self.batch_size))

        for index, chunk in enumerate(chunks):
            if index > 0:
                await self.sleep(self.batch_delay_seconds)

            try:
                response = await self.client.invoke(
                    "updateRecordsBatch", {"module": module, "records": chunk}
                )
            except TransportFailure as e:
                logger.error(f"{module} update batch {index + 1}/{len(chunks)} transport failure: {e}")
                result.failed_count += len(chunk)
                result.failed_ids.extend(r["id"] for r in chunk)
                continue

            if _is_rate_limited(response):
                result.rate_limited = True
                result.retry_after_seconds = _retry_after(response, self.default_retry_after_seconds)
                logger.warning(f"{module} updates rate limited; retry after {result.retry_after_seconds}s")
                break

            if not response.get("success"):
                logger.error(f"{module} update batch rejected: {response.get('error')}")
                result.failed_count += len(chunk)
                result.failed_ids.extend(r["id"] for r in chunk)
                continue

            data = response.get("data") or {}
            succeeded = set()
            for item in data.get("batchResults") or []:
                if item.get("status") == "success":
                    try:
                        succeeded.add(int(item.get("index")))
                    except (TypeError, ValueError):
                        continue

            for position, record in enumerate(chunk):
                if position in succeeded:
                    result.success_count += 1
                else:
                    result.failed_count += 1
                    result.failed_ids.append(record["id"])

        logger.info(
            f"{module} batch update complete: {result.success_count} success, {result.failed_count} failed"
        )
        return result

    async def propagate(self, records: list[MatchRecord]) -> PropagationReport:
        """Push line item and expectation statuses for synced records."""
        report = PropagationReport()
        if not records:
            return report

        line_updates = [
            {"id": r.line_item_zoho_id, **line_item_status_fields(r)}
            for r in records
        ]

        # One update per expectation, carrying the summed allocation
        allocated: dict[str, Decimal] = {}
        for record in records:
            if record.expectation_zoho_id:
                allocated[record.expectation_zoho_id] = (
                    allocated.get(record.expectation_zoho_id, ZERO) + record.matched_amount
                )
        expectation_updates = [
            {"id": expectation_id, **expectation_status_fields(amount)}
            for expectation_id, amount in allocated.items()
        ]

        line_result = await self.update_records_batch(LINE_ITEMS_MODULE, line_updates)
        report.line_items_updated = line_result.success_count
        report.line_items_failed = line_result.failed_count
        report.failed_line_item_ids = line_result.failed_ids

        if line_result.rate_limited:
            report.rate_limited = True
            report.retry_after_seconds = line_result.retry_after_seconds
            return report

        if expectation_updates:
            await self.sleep(self.batch_delay_seconds)
            expectation_result = await self.update_records_batch(EXPECTATIONS_MODULE, expectation_updates)
            report.expectations_updated = expectation_result.success_count
            report.expectations_failed = expectation_result.failed_count
            report.failed_expectation_ids = expectation_result.failed_ids

            if expectation_result.rate_limited:
                report.rate_limited = True
                report.retry_after_seconds = expectation_result.retry_after_seconds

        if report.degraded:
            logger.warning(
                f"Status propagation degraded: {report.line_items_failed} line items, "
                f"{report.expectations_failed} expectations failed"
            )

        return report

    async def sync_payment_status(self, payment: Payment, notes: Optional[str] = None) -> bool:
        data: dict[str, Any] = {
            "Status": payment.status.value,
            "Reconciled_Amount": float(payment.reconciled_amount),
            "Remaining_Amount": float(payment.remaining_amount),
        }
        if payment.status.value == "reconciled":
            data["Reconciled_At"] = format_zoho_datetime(payment.reconciled_at)
            data["Reconciled_By"] = ACTOR_NAME
        if notes:
            data["Notes"] = notes

        return await self._update_one(PAYMENTS_MODULE, payment.remote_id, data)

    async def sync_line_item_status(self, line_item: PaymentLineItem) -> bool:
        """Push a single approved-unmatched line item without a match record."""
        return await self._update_one(
            LINE_ITEMS_MODULE,
            line_item.remote_id,
            {"Status": line_item.status.value, "Match_Notes": line_item.notes or None},
        )

    async def sync_invalidation(self, expectation: Expectation) -> bool:
        return await self._update_one(
            EXPECTATIONS_MODULE,
            expectation.remote_id,
            {
                "Status": "invalidated",
                "Invalidated_At": format_zoho_datetime(expectation.invalidated_at),
                "Invalidated_By": ACTOR_NAME,
                "Invalidation_Reason": expectation.invalidation_reason,
            },
        )

    async def _update_one(self, module: str, record_id: str, data: dict) -> bool:
        try:
            response = await self.client.invoke(
                "updateRecord", {"module": module, "recordId": record_id, "data": data}
            )
        except TransportFailure as e:
            logger.error(f"Failed to update {module}/{record_id}: {e}")
            return False

        if _is_rate_limited(response):
            raise RateLimited(
                response.get("error") or "Rate limited",
                retry_after_seconds=_retry_after(response, self.default_retry_after_seconds),
            )
        if not response.get("success"):
            logger.error(f"Failed to update {module}/{record_id}: {response.get('error')}")
            return False
        return True
