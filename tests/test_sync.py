# tests/test_sync.py

"""
Tests for chunked match sync and status propagation.
"""

import pytest
from decimal import Decimal

from feerecon.core.errors import RateLimited, TransportFailure, ValidationFailure
from feerecon.core.sync import (
    EXPECTATIONS_MODULE,
    LINE_ITEMS_MODULE,
    PAYMENTS_MODULE,
    MatchSyncer,
    StatusPropagator,
)
from feerecon.models import PaymentStatus, SyncState

from factories import (
    RATE_LIMITED,
    FakeGateway,
    all_succeed,
    make_line_item,
    make_payment,
    make_record,
)


# ============================================
# Primary records
# ============================================

class TestSyncMatches:
    """Test chunked submission of match records."""

    @pytest.mark.asyncio
    async def test_chunks_of_one_hundred(self, sleep):
        gateway = FakeGateway()
        syncer = MatchSyncer(gateway, sleep=sleep)

        report = await syncer.sync_matches([make_record(n) for n in range(250)])

        batches = gateway.actions("createMatchBatch")
        assert [len(b["records"]) for b in batches] == [100, 100, 50]
        assert sleep.delays == [2.0, 2.0]
        assert report.success_count == 250
        assert report.failed_count == 0
        assert report.chunks_submitted == 3

    @pytest.mark.asyncio
    async def test_records_keep_staging_order(self, sleep):
        gateway = FakeGateway()
        syncer = MatchSyncer(gateway, sleep=sleep)

        report = await syncer.sync_matches([make_record(n) for n in range(5)])

        sent = [r["lineItemId"] for r in gateway.actions("createMatchBatch")[0]["records"]]
        assert sent == [f"z_li_{n}" for n in range(5)]
        assert [r.sync_id for r in report.results] == [f"sync_{n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_rate_limit_halts_run(self, sleep):
        gateway = FakeGateway(script=[all_succeed, RATE_LIMITED])
        syncer = MatchSyncer(gateway, sleep=sleep)
        states = []

        report = await syncer.sync_matches(
            [make_record(n) for n in range(250)],
            on_state=lambda record, state, remote_id, message: states.append((record.sync_id, state)),
        )

        assert len(gateway.actions("createMatchBatch")) == 2
        assert report.success_count == 100
        assert report.failed_count == 0
        assert report.rate_limited is True
        assert report.retry_after_seconds == 42
        assert report.not_submitted_count == 150
        assert ("sync_150", SyncState.RATE_LIMITED) in states
        assert not any(sync_id == "sync_200" for sync_id, _ in states)

    @pytest.mark.asyncio
    async def test_rate_limit_without_retry_after_uses_default(self, sleep):
        gateway = FakeGateway(script=[{"success": False, "code": "ZOHO_RATE_LIMIT", "error": "slow down"}])
        syncer = MatchSyncer(gateway, default_retry_after_seconds=60, sleep=sleep)

        report = await syncer.sync_matches([make_record(1)])

        assert report.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_transport_failure_fails_only_its_chunk(self, sleep):
        gateway = FakeGateway(script=[TransportFailure("connection reset")])
        syncer = MatchSyncer(gateway, sleep=sleep)

        report = await syncer.sync_matches([make_record(n) for n in range(150)])

        assert report.failed_count == 100
        assert report.success_count == 50
        assert report.rate_limited is False
        assert report.results[0].message == "connection reset"

    @pytest.mark.asyncio
    async def test_rejected_chunk(self, sleep):
        gateway = FakeGateway(script=[{"success": False, "error": "Invalid module"}])
        syncer = MatchSyncer(gateway, sleep=sleep)

        report = await syncer.sync_matches([make_record(1), make_record(2)])

        assert report.failed_count == 2
        assert all(r.message == "Invalid module" for r in report.results)

    @pytest.mark.asyncio
    async def test_per_record_failures(self, sleep):
        partial = {
            "success": True,
            "data": {
                "batchResults": [
                    {"index": 0, "status": "success", "id": "zm_0"},
                    {"index": 1, "status": "error", "message": "MANDATORY_NOT_FOUND"},
                ],
            },
        }
        gateway = FakeGateway(script=[partial])
        syncer = MatchSyncer(gateway, sleep=sleep)
        states = {}

        report = await syncer.sync_matches(
            [make_record(n) for n in range(3)],
            on_state=lambda record, state, remote_id, message: states.__setitem__(record.sync_id, state),
        )

        assert report.success_count == 1
        assert report.failed_count == 2
        assert report.results[0].remote_id == "zm_0"
        assert report.results[1].message == "MANDATORY_NOT_FOUND"
        assert report.results[2].message == "No result returned"
        assert states == {
            "sync_0": SyncState.CONFIRMED,
            "sync_1": SyncState.FAILED,
            "sync_2": SyncState.FAILED,
        }

    @pytest.mark.asyncio
    async def test_each_chunk_reported_before_the_next_is_sent(self, sleep):
        gateway = FakeGateway()
        syncer = MatchSyncer(gateway, sleep=sleep)
        reported = []

        async def on_chunk_synced(sync_ids):
            reported.append((len(gateway.calls), len(sync_ids)))

        await syncer.sync_matches([make_record(n) for n in range(250)], on_chunk_synced=on_chunk_synced)

        assert reported == [(1, 100), (2, 100), (3, 50)]

    @pytest.mark.asyncio
    async def test_chunk_report_holds_only_created_records(self, sleep):
        partial = {
            "success": True,
            "data": {"batchResults": [{"index": 1, "status": "success", "id": "zm_1"}]},
        }
        gateway = FakeGateway(script=[TransportFailure("connection reset"), partial, RATE_LIMITED])
        syncer = MatchSyncer(gateway, batch_size=2, sleep=sleep)
        reported = []

        async def on_chunk_synced(sync_ids):
            reported.append(sync_ids)

        await syncer.sync_matches([make_record(n) for n in range(6)], on_chunk_synced=on_chunk_synced)

        assert reported == [["sync_3"]]

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, sleep):
        gateway = FakeGateway()

        report = await MatchSyncer(gateway, sleep=sleep).sync_matches([])

        assert gateway.calls == []
        assert report.total_requested == 0

    def test_batch_size_is_capped(self):
        with pytest.raises(ValueError):
            MatchSyncer(FakeGateway(), batch_size=101)


class TestSyncMatch:
    """Test the single-record path."""

    @pytest.mark.asyncio
    async def test_creates_then_updates_both_records(self, sleep):
        created = {"success": True, "data": {"data": [{"details": {"id": "zm_9"}}]}}
        gateway = FakeGateway(script=[created])

        result = await MatchSyncer(gateway, sleep=sleep).sync_match(make_record(1))

        assert result.remote_id == "zm_9"
        updates = gateway.actions("updateRecord")
        assert [u["module"] for u in updates] == [LINE_ITEMS_MODULE, EXPECTATIONS_MODULE]
        assert updates[0]["data"]["Matched_Expectation"] == {"id": "z_exp_1"}
        assert updates[1]["data"]["Remaining_Amount"] == 0

    @pytest.mark.asyncio
    async def test_follow_up_failures_are_warnings(self, sleep):
        created = {"success": True, "data": {"data": [{"details": {"id": "zm_9"}}]}}
        gateway = FakeGateway(script=[
            created,
            {"success": False, "error": "INVALID_DATA"},
            TransportFailure("timeout"),
        ])

        result = await MatchSyncer(gateway, sleep=sleep).sync_match(make_record(1))

        assert result.succeeded

    @pytest.mark.asyncio
    async def test_rate_limit_raises(self, sleep):
        gateway = FakeGateway(script=[RATE_LIMITED])

        with pytest.raises(RateLimited) as exc:
            await MatchSyncer(gateway, sleep=sleep).sync_match(make_record(1))

        assert exc.value.retry_after_seconds == 42

    @pytest.mark.asyncio
    async def test_rejection_raises(self, sleep):
        gateway = FakeGateway(script=[{"success": False, "error": "DUPLICATE_DATA"}])

        with pytest.raises(ValidationFailure):
            await MatchSyncer(gateway, sleep=sleep).sync_match(make_record(1))


# ============================================
# Status propagation
# ============================================

class TestPropagate:
    """Test the secondary line item and expectation push."""

    @pytest.mark.asyncio
    async def test_sums_allocation_per_expectation(self, sleep):
        gateway = FakeGateway()
        propagator = StatusPropagator(gateway, sleep=sleep)
        records = [
            make_record(1, expectation_zoho_id="z_exp_shared", matched_amount=60),
            make_record(2, expectation_zoho_id="z_exp_shared", matched_amount="40.50"),
            make_record(3),
        ]

        report = await propagator.propagate(records)

        line_batch, expectation_batch = gateway.actions("updateRecordsBatch")
        assert line_batch["module"] == LINE_ITEMS_MODULE
        assert len(line_batch["records"]) == 3
        assert expectation_batch["module"] == EXPECTATIONS_MODULE
        assert expectation_batch["records"] == [
            {"id": "z_exp_shared", "Status": "matched", "Allocated_Amount": 100.5, "Remaining_Amount": 0},
            {"id": "z_exp_3", "Status": "matched", "Allocated_Amount": 100.0, "Remaining_Amount": 0},
        ]
        assert report.line_items_updated == 3
        assert report.expectations_updated == 2
        assert report.degraded is False

    @pytest.mark.asyncio
    async def test_rate_limited_line_items_skip_expectations(self, sleep):
        gateway = FakeGateway(script=[RATE_LIMITED])
        propagator = StatusPropagator(gateway, sleep=sleep)

        report = await propagator.propagate([make_record(1)])

        assert len(gateway.calls) == 1
        assert report.rate_limited is True
        assert report.retry_after_seconds == 42
        assert report.degraded

    @pytest.mark.asyncio
    async def test_failed_ids_reported(self, sleep):
        partial = {
            "success": True,
            "data": {"batchResults": [
                {"index": 0, "status": "success"},
                {"index": 1, "status": "error", "message": "INVALID_DATA"},
            ]},
        }
        gateway = FakeGateway(script=[partial])
        propagator = StatusPropagator(gateway, sleep=sleep)

        report = await propagator.propagate([make_record(1), make_record(2)])

        assert report.failed_line_item_ids == ["z_li_2"]
        assert report.expectations_updated == 2
        assert report.degraded

    @pytest.mark.asyncio
    async def test_unmatched_approval_has_no_expectation_update(self, sleep):
        gateway = FakeGateway()
        record = make_record(1).model_copy(update={"expectation_zoho_id": None, "notes": "No plan"})

        await StatusPropagator(gateway, sleep=sleep).propagate([record])

        (line_batch,) = gateway.actions("updateRecordsBatch")
        assert line_batch["records"] == [
            {"id": "z_li_1", "Status": "approved_unmatched", "Match_Notes": "No plan"},
        ]


class TestSingleUpdates:

    @pytest.mark.asyncio
    async def test_payment_status(self, sleep):
        gateway = FakeGateway()
        payment = make_payment("pay_1", 100, [make_line_item("li_1", 100, "P1")])
        payment.status = PaymentStatus.IN_PROGRESS
        payment.reconciled_amount = Decimal("40")
        payment.remaining_amount = Decimal("60")

        pushed = await StatusPropagator(gateway, sleep=sleep).sync_payment_status(payment, notes="partial")

        assert pushed is True
        (update,) = gateway.actions("updateRecord")
        assert update["module"] == PAYMENTS_MODULE
        assert update["recordId"] == "z_pay_1"
        assert update["data"] == {
            "Status": "in_progress",
            "Reconciled_Amount": 40.0,
            "Remaining_Amount": 60.0,
            "Notes": "partial",
        }

    @pytest.mark.asyncio
    async def test_failed_update_returns_false(self, sleep):
        gateway = FakeGateway(script=[TransportFailure("timeout")])
        line_item = make_line_item("li_1", 10, "P1")

        assert await StatusPropagator(gateway, sleep=sleep).sync_line_item_status(line_item) is False

    @pytest.mark.asyncio
    async def test_rate_limit_raises(self, sleep):
        gateway = FakeGateway(script=[RATE_LIMITED])
        line_item = make_line_item("li_1", 10, "P1")

        with pytest.raises(RateLimited):
            await StatusPropagator(gateway, sleep=sleep).sync_line_item_status(line_item)
