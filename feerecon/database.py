# feerecon/database.py

"""
Supabase mirror of the working set.

The CRM stays the system of record; these tables let a session survive a
restart and keep confirmed-but-unsynced matches from being lost. Every
function logs and swallows database errors, returning False / None.
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
import logging

from supabase import create_client, Client

from feerecon.config import get_settings
from feerecon.models import (
    Expectation,
    ExpectationStatus,
    FeeCategory,
    LineItemStatus,
    MatchRecord,
    Payment,
    PaymentLineItem,
    PaymentStatus,
    SyncState,
    SyncUnit,
)
from feerecon.models.money import to_money

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
WRITE_CHUNK_SIZE = 100

PAYMENTS_TABLE = "cached_payments"
LINE_ITEMS_TABLE = "cached_line_items"
EXPECTATIONS_TABLE = "cached_expectations"
PENDING_MATCHES_TABLE = "pending_matches"
SYNC_STATUS_TABLE = "sync_status"


@lru_cache()
def get_supabase_admin() -> Client:
    """Admin client (bypasses RLS - use carefully)."""
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


# ============================================
# Row mapping
# ============================================

def payment_row(payment: Payment, user_id: str) -> dict:
    return {
        "id": payment.id,
        "user_id": user_id,
        "provider_name": payment.provider_name,
        "payment_reference": payment.payment_reference,
        "bank_reference": payment.bank_reference,
        "amount": float(payment.amount),
        "payment_date": payment.payment_date.isoformat() if payment.payment_date else None,
        "status": payment.status.value,
        "reconciled_amount": float(payment.reconciled_amount),
        "remaining_amount": float(payment.remaining_amount),
        "notes": payment.notes or None,
        "zoho_record_id": payment.remote_id,
    }


def line_item_row(line_item: PaymentLineItem, payment_id: str, user_id: str) -> dict:
    return {
        "id": line_item.id,
        "user_id": user_id,
        "payment_id": payment_id,
        "client_name": line_item.client_name,
        "plan_reference": line_item.plan_reference,
        "adviser_name": line_item.adviser_name,
        "amount": float(line_item.amount),
        "fee_category": line_item.fee_category.value,
        "status": line_item.status.value,
        "matched_expectation_id": line_item.matched_expectation_id,
        "match_notes": line_item.notes,
        "zoho_record_id": line_item.remote_id,
    }


def expectation_row(expectation: Expectation, user_id: str) -> dict:
    return {
        "id": expectation.id,
        "user_id": user_id,
        "provider_name": expectation.provider_name,
        "client_name": expectation.client_name,
        "plan_reference": expectation.plan_reference,
        "adviser_name": expectation.adviser_name or None,
        "expected_amount": float(expectation.expected_amount),
        "calculation_date": expectation.calculation_date.isoformat() if expectation.calculation_date else None,
        "fee_category": expectation.fee_category.value,
        "status": expectation.status.value,
        "allocated_amount": float(expectation.allocated_amount),
        "remaining_amount": float(expectation.remaining_amount),
        "invalidation_reason": expectation.invalidation_reason,
        "zoho_record_id": expectation.remote_id,
    }


def _enum(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def payment_from_row(row: dict, line_items: list[PaymentLineItem]) -> Payment:
    return Payment(
        id=row["id"],
        zoho_id=row.get("zoho_record_id"),
        provider_name=row.get("provider_name") or "Unknown Provider",
        payment_reference=row.get("payment_reference") or "Unknown Payment",
        bank_reference=row.get("bank_reference") or "",
        amount=to_money(row.get("amount")),
        payment_date=row.get("payment_date"),
        status=_enum(PaymentStatus, row.get("status"), PaymentStatus.UNRECONCILED),
        reconciled_amount=to_money(row.get("reconciled_amount")),
        remaining_amount=to_money(row["remaining_amount"]) if row.get("remaining_amount") is not None else None,
        line_items=line_items,
        notes=row.get("notes") or "",
    )


def line_item_from_row(row: dict) -> PaymentLineItem:
    return PaymentLineItem(
        id=row["id"],
        zoho_id=row.get("zoho_record_id"),
        client_name=row.get("client_name") or "Unknown Client",
        plan_reference=row.get("plan_reference") or "",
        adviser_name=row.get("adviser_name"),
        fee_category=_enum(FeeCategory, (row.get("fee_category") or "").lower(), FeeCategory.ONGOING),
        amount=to_money(row.get("amount")),
        status=_enum(LineItemStatus, row.get("status"), LineItemStatus.UNMATCHED),
        matched_expectation_id=row.get("matched_expectation_id"),
        notes=row.get("match_notes"),
    )


def expectation_from_row(row: dict) -> Expectation:
    return Expectation(
        id=row["id"],
        zoho_id=row.get("zoho_record_id"),
        client_name=row.get("client_name") or "Unknown Client",
        plan_reference=row.get("plan_reference") or "",
        expected_amount=to_money(row.get("expected_amount")),
        calculation_date=row.get("calculation_date"),
        fee_category=_enum(FeeCategory, (row.get("fee_category") or "").lower(), FeeCategory.ONGOING),
        provider_name=row.get("provider_name") or "Unknown Provider",
        adviser_name=row.get("adviser_name") or "",
        status=_enum(ExpectationStatus, row.get("status"), ExpectationStatus.UNMATCHED),
        allocated_amount=to_money(row.get("allocated_amount")),
        remaining_amount=to_money(row["remaining_amount"]) if row.get("remaining_amount") is not None else None,
        invalidation_reason=row.get("invalidation_reason"),
    )


# ============================================
# Cache store
# ============================================

class CacheStore:
    """Per-user cache of payments, expectations and unsynced matches."""

    def __init__(self, user_id: str, client: Optional[Client] = None):
        self.user_id = user_id
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_admin()
        return self._client

    def _fetch_paginated(self, table: str, **filters) -> list[dict]:
        rows: list[dict] = []
        offset = 0
        while True:
            query = self.client.table(table).select("*").eq("user_id", self.user_id)
            for column, value in filters.items():
                query = query.eq(column, value)
            response = query.range(offset, offset + PAGE_SIZE - 1).execute()
            batch = response.data or []
            rows.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return rows

    def _upsert_chunked(self, table: str, rows: list[dict]) -> None:
        for start in range(0, len(rows), WRITE_CHUNK_SIZE):
            self.client.table(table).upsert(rows[start:start + WRITE_CHUNK_SIZE]).execute()

    async def load_all(self) -> Optional[tuple[list[Payment], list[Expectation]]]:
        """Rebuild the working set from the cache tables."""
        try:
            payment_rows = self._fetch_paginated(PAYMENTS_TABLE)
            line_item_rows = self._fetch_paginated(LINE_ITEMS_TABLE)
            expectation_rows = self._fetch_paginated(EXPECTATIONS_TABLE)
        except Exception as e:
            logger.error(f"Cache load failed: {e}")
            return None

        by_payment: dict[str, list[PaymentLineItem]] = {}
        for row in line_item_rows:
            by_payment.setdefault(row["payment_id"], []).append(line_item_from_row(row))

        payments = [payment_from_row(row, by_payment.get(row["id"], [])) for row in payment_rows]
        expectations = [expectation_from_row(row) for row in expectation_rows]

        logger.info(
            f"Loaded {len(payments)} payments with {len(line_item_rows)} line items, "
            f"{len(expectations)} expectations from cache"
        )
        return payments, expectations

    async def save_all(self, payments: list[Payment], expectations: list[Expectation]) -> bool:
        """Replace the cached working set."""
        try:
            for table in (LINE_ITEMS_TABLE, PAYMENTS_TABLE, EXPECTATIONS_TABLE):
                self.client.table(table).delete().eq("user_id", self.user_id).execute()

            self._upsert_chunked(PAYMENTS_TABLE, [payment_row(p, self.user_id) for p in payments])
            self._upsert_chunked(
                LINE_ITEMS_TABLE,
                [line_item_row(li, p.id, self.user_id) for p in payments for li in p.line_items],
            )
            self._upsert_chunked(EXPECTATIONS_TABLE, [expectation_row(e, self.user_id) for e in expectations])
        except Exception as e:
            logger.error(f"Cache save failed: {e}")
            return False

        logger.info(f"Cached {len(payments)} payments, {len(expectations)} expectations")
        return True

    async def update_line_item(self, line_item: PaymentLineItem) -> bool:
        try:
            self.client.table(LINE_ITEMS_TABLE).update({
                "status": line_item.status.value,
                "matched_expectation_id": line_item.matched_expectation_id,
                "match_notes": line_item.notes,
            }).eq("id", line_item.id).eq("user_id", self.user_id).execute()
            return True
        except Exception as e:
            logger.error(f"Cache update of line item {line_item.id} failed: {e}")
            return False

    async def update_expectation(self, expectation: Expectation) -> bool:
        try:
            self.client.table(EXPECTATIONS_TABLE).update({
                "status": expectation.status.value,
                "allocated_amount": float(expectation.allocated_amount),
                "remaining_amount": float(expectation.remaining_amount),
                "invalidation_reason": expectation.invalidation_reason,
            }).eq("id", expectation.id).eq("user_id", self.user_id).execute()
            return True
        except Exception as e:
            logger.error(f"Cache update of expectation {expectation.id} failed: {e}")
            return False

    async def update_payment(self, payment: Payment) -> bool:
        try:
            self.client.table(PAYMENTS_TABLE).update({
                "status": payment.status.value,
                "reconciled_amount": float(payment.reconciled_amount),
                "remaining_amount": float(payment.remaining_amount),
                "notes": payment.notes or None,
            }).eq("id", payment.id).eq("user_id", self.user_id).execute()
            return True
        except Exception as e:
            logger.error(f"Cache update of payment {payment.id} failed: {e}")
            return False

    async def save_pending_match(self, unit: SyncUnit) -> bool:
        record = unit.record
        try:
            self.client.table(PENDING_MATCHES_TABLE).upsert({
                "id": record.sync_id,
                "user_id": self.user_id,
                "payment_id": record.payment_id,
                "line_item_id": record.line_item_id,
                "expectation_id": record.expectation_id,
                "matched_amount": float(record.matched_amount),
                "variance": float(record.variance),
                "variance_percentage": float(record.variance_percentage),
                "match_quality": record.match_quality.value,
                "notes": record.notes or None,
                "reason_code": record.reason_code,
                "payload": record.model_dump(mode="json"),
                "synced_to_zoho": unit.is_synced,
            }).execute()
            return True
        except Exception as e:
            logger.error(f"Cache save of pending match {record.sync_id} failed: {e}")
            return False

    async def get_unsynced_pending_matches(self) -> Optional[list[SyncUnit]]:
        """Confirmed matches that never reached the CRM, oldest first."""
        try:
            rows = self._fetch_paginated(PENDING_MATCHES_TABLE, synced_to_zoho=False)
        except Exception as e:
            logger.error(f"Cache read of pending matches failed: {e}")
            return None

        units = []
        for row in sorted(rows, key=lambda r: r.get("matched_at") or ""):
            payload = row.get("payload")
            if not payload:
                continue
            units.append(SyncUnit(record=MatchRecord.model_validate(payload), state=SyncState.STAGED))

        logger.info(f"Fetched {len(units)} unsynced pending matches")
        return units

    async def mark_synced(self, sync_ids: list[str]) -> bool:
        if not sync_ids:
            return True
        try:
            for start in range(0, len(sync_ids), WRITE_CHUNK_SIZE):
                self.client.table(PENDING_MATCHES_TABLE).update({
                    "synced_to_zoho": True,
                    "synced_at": datetime.now(timezone.utc).isoformat(),
                }).in_("id", sync_ids[start:start + WRITE_CHUNK_SIZE]).eq("user_id", self.user_id).execute()
            return True
        except Exception as e:
            logger.error(f"Cache mark-synced failed: {e}")
            return False

    async def update_sync_status(self, **fields) -> bool:
        try:
            self.client.table(SYNC_STATUS_TABLE).upsert({"id": self.user_id, **fields}).execute()
            return True
        except Exception as e:
            logger.error(f"Cache sync status update failed: {e}")
            return False
