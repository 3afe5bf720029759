# tests/test_workflow.py

"""
Tests for the commit -> mirror -> push workflow.
"""

import asyncio

import pytest

from feerecon.core.errors import PreconditionViolation
from feerecon.core.workflow import ReconciliationWorkflow
from feerecon.models import (
    ExpectationStatus,
    LineItemStatus,
    PaymentStatus,
    PropagationState,
    SyncState,
)

from factories import (
    RATE_LIMITED,
    FakeGateway,
    all_succeed,
    make_expectation,
    make_line_item,
    make_payment,
    make_session,
)


class FakeCrm(FakeGateway):
    """Gateway plus the read methods used by a download."""

    def __init__(self, script=None, providers=None, payments=None, line_items=None, expectations=None):
        super().__init__(script)
        self.providers = providers or []
        self.payments = payments or []
        self.line_items = line_items or []
        self.expectations = expectations or []

    async def get_providers(self, params):
        return self.providers

    async def get_payments(self, params):
        return self.payments

    async def get_payment_line_items(self, params):
        return self.line_items

    async def get_expectations(self, params):
        return self.expectations


class FakeCache:
    """In-memory stand-in for the Supabase cache store."""

    def __init__(self, snapshot=None, unsynced=None):
        self.snapshot = snapshot
        self.unsynced = unsynced or []
        self.saved_units = []
        self.synced_ids = []
        self.sync_status = {}
        self.updated = []

    async def load_all(self):
        return self.snapshot

    async def save_all(self, payments, expectations):
        self.snapshot = (payments, expectations)
        return True

    async def update_line_item(self, line_item):
        self.updated.append(("line_item", line_item.id))
        return True

    async def update_expectation(self, expectation):
        self.updated.append(("expectation", expectation.id))
        return True

    async def update_payment(self, payment):
        self.updated.append(("payment", payment.id))
        return True

    async def save_pending_match(self, unit):
        self.saved_units.append(unit.sync_id)
        return True

    async def get_unsynced_pending_matches(self):
        return self.unsynced

    async def mark_synced(self, sync_ids):
        self.synced_ids.extend(sync_ids)
        return True

    async def update_sync_status(self, **fields):
        self.sync_status.update(fields)
        return True


def make_workflow(session, crm, cache=None, sleep=None):
    return ReconciliationWorkflow(session, crm, cache, batch_delay_seconds=2.0, sleep=sleep)


# ============================================
# Confirm and sync
# ============================================

class TestConfirmAndSync:
    """Test committing locally then pushing to the CRM."""

    @pytest.mark.asyncio
    async def test_units_marked_synced(self, scenario_session, sleep):
        crm = FakeCrm()
        cache = FakeCache()
        workflow = make_workflow(scenario_session, crm, cache, sleep)
        pending = scenario_session.add("li_1", "exp_1")

        match, report = await workflow.confirm_and_sync(notes="ok")

        assert report.success_count == 1
        assert scenario_session.unsynced_units() == []
        unit = scenario_session.sync_backlog[pending.id]
        assert unit.state == SyncState.CONFIRMED
        assert unit.remote_match_id == "zm_0"
        assert unit.propagation == PropagationState.PROPAGATED
        assert cache.saved_units == [pending.id]
        assert cache.synced_ids == [pending.id]
        assert cache.sync_status["pending_match_count"] == 0
        assert ("line_item", "li_1") in cache.updated
        assert ("expectation", "exp_1") in cache.updated

    @pytest.mark.asyncio
    async def test_push_order(self, scenario_session, sleep):
        crm = FakeCrm()
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        scenario_session.add("li_1", "exp_1")

        await workflow.confirm_and_sync()

        actions = [action for action, _ in crm.calls]
        assert actions == [
            "createMatchBatch",
            "updateRecordsBatch",
            "updateRecordsBatch",
            "updateRecord",
        ]
        payment_update = crm.actions("updateRecord")[0]
        assert payment_update["module"] == "Bank_Payments"
        assert payment_update["data"]["Status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_rate_limit_keeps_local_commit(self, scenario_session, sleep):
        crm = FakeCrm(script=[RATE_LIMITED])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        scenario_session.add("li_1", "exp_1")

        match, report = await workflow.confirm_and_sync()

        assert report.rate_limited is True
        assert report.propagation is None
        assert scenario_session.get_expectation("exp_1").status == ExpectationStatus.MATCHED
        assert [u.state for u in scenario_session.unsynced_units()] == [SyncState.RATE_LIMITED]
        assert len(crm.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_after_rate_limit(self, scenario_session, sleep):
        crm = FakeCrm(script=[RATE_LIMITED])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        scenario_session.add("li_1", "exp_1")
        await workflow.confirm_and_sync()

        report = await workflow.sync_pending()

        assert report.success_count == 1
        assert scenario_session.unsynced_units() == []

    @pytest.mark.asyncio
    async def test_propagation_rate_limit_leaves_units_queued(self, scenario_session, sleep):
        crm = FakeCrm(script=[all_succeed, RATE_LIMITED])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        pending = scenario_session.add("li_1", "exp_1")

        _, report = await workflow.confirm_and_sync()

        assert report.success_count == 1
        assert report.propagation.rate_limited is True
        assert [u.sync_id for u in scenario_session.propagation_queue()] == [pending.id]
        assert crm.actions("updateRecord") == []

        retry = await workflow.retry_propagation()

        assert retry.rate_limited is False
        assert scenario_session.propagation_queue() == []

    @pytest.mark.asyncio
    async def test_failed_status_update_degrades_unit(self, scenario_session, sleep):
        rejected = {"success": True, "data": {"batchResults": [{"index": 0, "status": "error"}]}}
        crm = FakeCrm(script=[all_succeed, rejected])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        pending = scenario_session.add("li_1", "exp_1")

        _, report = await workflow.confirm_and_sync()

        assert report.propagation.degraded
        assert scenario_session.sync_backlog[pending.id].propagation == PropagationState.DEGRADED

    @pytest.mark.asyncio
    async def test_confirm_failure_touches_nothing(self, scenario_session, sleep):
        crm = FakeCrm()
        workflow = make_workflow(scenario_session, crm, sleep=sleep)

        with pytest.raises(PreconditionViolation):
            await workflow.confirm_and_sync()

        assert crm.calls == []

    @pytest.mark.asyncio
    async def test_cache_marks_each_chunk_synced_as_it_lands(self, sleep):
        session = make_session(
            [make_payment("pay_big", 1500, [make_line_item(f"li_{n}", 10, f"PLAN-{n}") for n in range(150)])],
            [make_expectation(f"exp_{n}", 10, f"PLAN-{n}") for n in range(150)],
        )
        session.select_payment("pay_big")
        session.auto_match()
        session.confirm()
        cache = FakeCache()
        seen_before_send = []

        def interrupted(action, params):
            seen_before_send.append(len(cache.synced_ids))
            raise asyncio.CancelledError()

        crm = FakeCrm(script=[all_succeed, interrupted])
        workflow = make_workflow(session, crm, cache, sleep)

        with pytest.raises(asyncio.CancelledError):
            await workflow.sync_pending()

        assert seen_before_send == [100]
        assert len(cache.synced_ids) == 100
        assert len(session.unsynced_units()) == 50


# ============================================
# Download and restore
# ============================================

class TestDownload:

    @pytest.mark.asyncio
    async def test_blocked_while_unsynced(self, scenario_session, sleep):
        crm = FakeCrm(script=[RATE_LIMITED])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)
        scenario_session.add("li_1", "exp_1")
        await workflow.confirm_and_sync()

        with pytest.raises(PreconditionViolation):
            await workflow.download()

        assert scenario_session.get_payment("pay_1") is not None

    @pytest.mark.asyncio
    async def test_replaces_working_set(self, scenario_session, sleep):
        crm = FakeCrm(
            providers=[{"id": "prov_1", "Name": "Acme Ltd", "Provider_Group": "Acme Platform"}],
            payments=[{"id": "z_pay_9", "Name": "PAY-9", "Provider": {"id": "prov_1"}, "Amount": 150}],
            line_items=[
                {"id": "z_li_9", "Bank_Payment": {"id": "z_pay_9"}, "Amount": 150, "Plan_Reference": "P9"},
            ],
            expectations=[
                {"id": "z_exp_9", "Expected_Fee_Amount": 150, "Provider": {"id": "prov_1"},
                 "Plan_Policy_Reference": "P9"},
            ],
        )
        cache = FakeCache()
        workflow = make_workflow(scenario_session, crm, cache, sleep)

        payments, expectations = await workflow.download()

        assert [p.id for p in payments] == ["z_pay_9"]
        assert payments[0].provider_name == "Acme Platform"
        assert expectations[0].provider_name == "Acme Platform"
        assert scenario_session.get_payment("pay_1") is None
        assert cache.snapshot == (payments, expectations)
        assert sleep.delays == [0.2, 0.2, 0.2]

    @pytest.mark.asyncio
    async def test_restore_requeues_unsynced(self, scenario_session, sleep):
        scenario_session.add("li_1", "exp_1")
        scenario_session.confirm()
        units = scenario_session.unsynced_units()
        payments, expectations = scenario_session.payments, scenario_session.expectations

        session = make_session([], [])
        cache = FakeCache(snapshot=(payments, expectations), unsynced=units)
        workflow = make_workflow(session, FakeCrm(), cache, sleep)

        assert await workflow.restore() is True
        assert [u.sync_id for u in session.unsynced_units()] == [u.sync_id for u in units]

    @pytest.mark.asyncio
    async def test_restore_without_snapshot(self, scenario_session, sleep):
        workflow = make_workflow(scenario_session, FakeCrm(), FakeCache(), sleep)
        assert await workflow.restore() is False


# ============================================
# Single-item actions
# ============================================

class TestSingleItemActions:

    @pytest.mark.asyncio
    async def test_approve_line_item_pushes_status(self, scenario_session, sleep):
        crm = FakeCrm()
        workflow = make_workflow(scenario_session, crm, sleep=sleep)

        line_item, pushed = await workflow.approve_line_item("li_2", "Not expected")

        assert pushed is True
        assert line_item.status == LineItemStatus.APPROVED_UNMATCHED
        (update,) = crm.actions("updateRecord")
        assert update["data"] == {"Status": "approved_unmatched", "Match_Notes": "Not expected"}

    @pytest.mark.asyncio
    async def test_invalidate_rate_limited_is_local_only(self, scenario_session, sleep):
        crm = FakeCrm(script=[RATE_LIMITED])
        workflow = make_workflow(scenario_session, crm, sleep=sleep)

        expectation, pushed = await workflow.invalidate("exp_2", "Plan transferred out")

        assert pushed is False
        assert expectation.status == ExpectationStatus.INVALIDATED

    @pytest.mark.asyncio
    async def test_close_payment(self, scenario_session, sleep):
        crm = FakeCrm()
        workflow = make_workflow(scenario_session, crm, sleep=sleep)

        payment, pushed = await workflow.close_payment("Written off")

        assert pushed is True
        assert payment.status == PaymentStatus.RECONCILED
        (batch,) = crm.actions("updateRecordsBatch")
        assert [r["id"] for r in batch["records"]] == ["z_li_1", "z_li_2"]
        (update,) = crm.actions("updateRecord")
        assert update["data"]["Status"] == "reconciled"
        assert update["data"]["Notes"] == "Written off"
