# feerecon/integrations/zoho_mapping.py

"""
Translation between Zoho CRM records and the domain models.

Zoho module layout:
- Bank_Payments        one record per bank transfer
- Bank_Payment_Lines   line items, linked through the Bank_Payment lookup
- Expectations         expected fees, linked to a provider through Provider
- Providers            provider records; Provider_Group wins over Name
"""

from datetime import date, datetime, timezone
from typing import Any, Optional

from feerecon.models import (
    Expectation,
    ExpectationStatus,
    FeeCategory,
    LineItemStatus,
    Payment,
    PaymentLineItem,
    PaymentStatus,
)
from feerecon.models.money import to_money

UNKNOWN_PROVIDER = "Unknown Provider"
UNKNOWN_CLIENT = "Unknown Client"


def format_zoho_datetime(value: Optional[datetime] = None) -> str:
    """Zoho accepts ISO timestamps with an explicit offset and no milliseconds."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_zoho_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _lookup_id(value: Any) -> Optional[str]:
    """Zoho lookups arrive as {"id": ..., "name": ...}; plain ids are tolerated."""
    if isinstance(value, dict):
        lookup_id = value.get("id")
        return str(lookup_id) if lookup_id else None
    if value:
        return str(value)
    return None


def _lookup_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("name")
    return None


def _fee_category(value: Any) -> FeeCategory:
    if str(value or "").strip().lower() == "initial":
        return FeeCategory.INITIAL
    return FeeCategory.ONGOING


def _enum_or_default(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        return default


# ============================================
# Providers
# ============================================

def build_provider_map(providers: list[dict]) -> dict[str, str]:
    """Provider id -> display name, resolved to the provider group when set."""
    provider_map = {}
    for provider in providers:
        provider_id = provider.get("id")
        if not provider_id:
            continue
        provider_map[str(provider_id)] = provider.get("Provider_Group") or provider.get("Name") or UNKNOWN_PROVIDER
    return provider_map


def resolve_provider_name(lookup: Any, provider_map: dict[str, str]) -> str:
    provider_id = _lookup_id(lookup)
    if not provider_id:
        return UNKNOWN_PROVIDER
    return provider_map.get(provider_id) or _lookup_name(lookup) or UNKNOWN_PROVIDER


# ============================================
# Records -> domain
# ============================================

def map_line_item(record: dict) -> PaymentLineItem:
    fee_category = record.get("Fee_Category")
    fee_type = record.get("Fee_Type")

    status = _enum_or_default(LineItemStatus, record.get("Status"), LineItemStatus.UNMATCHED)
    matched_expectation_id = _lookup_id(record.get("Matched_Expectation"))
    if status == LineItemStatus.MATCHED and not matched_expectation_id:
        # A matched line without its expectation link cannot be trusted
        status = LineItemStatus.UNMATCHED

    return PaymentLineItem(
        id=str(record["id"]),
        zoho_id=str(record["id"]),
        client_name=record.get("Client_Name") or UNKNOWN_CLIENT,
        plan_reference=record.get("Plan_Reference") or "",
        adviser_name=record.get("Adviser_Name"),
        fee_category=_fee_category(fee_category),
        fee_type=fee_type.lower() if fee_type else None,
        description=record.get("Description") or f"{fee_category or 'Ongoing'} {fee_type or 'fee'}",
        amount=to_money(record.get("Amount")),
        status=status,
        matched_expectation_id=matched_expectation_id if status == LineItemStatus.MATCHED else None,
        notes=record.get("Match_Notes"),
    )


def map_payment(
    record: dict,
    line_items: list[PaymentLineItem],
    provider_map: dict[str, str],
) -> Payment:
    total = record.get("Total_Amount") or record.get("Amount")
    amount = to_money(total) if total else sum((li.amount for li in line_items), to_money(0))

    status = _enum_or_default(PaymentStatus, record.get("Status"), PaymentStatus.UNRECONCILED)
    reconciled = to_money(record.get("Reconciled_Amount"))

    return Payment(
        id=str(record["id"]),
        zoho_id=str(record["id"]),
        provider_name=resolve_provider_name(
            record.get("Provider") or record.get("Payment_Provider"), provider_map
        ),
        payment_reference=record.get("Name") or record.get("Payment_Reference") or "",
        bank_reference=record.get("Bank_Reference") or "",
        amount=amount,
        payment_date=parse_zoho_date(record.get("Payment_Date")) or date.today(),
        status=status,
        reconciled_amount=reconciled,
        line_items=line_items,
        notes=record.get("Notes") or "",
    )


def map_expectation(record: dict, provider_map: dict[str, str]) -> Expectation:
    expected = record.get("Expected_Amount")
    if expected is None:
        expected = record.get("Expected_Fee_Amount")

    fee_category = record.get("Fee_Category")
    fee_type = record.get("Fee_Type")

    status = _enum_or_default(ExpectationStatus, record.get("Status"), ExpectationStatus.UNMATCHED)

    return Expectation(
        id=str(record["id"]),
        zoho_id=str(record["id"]),
        client_name=_lookup_name(record.get("Client_1")) or UNKNOWN_CLIENT,
        plan_reference=record.get("Plan_Policy_Reference") or "",
        expected_amount=to_money(expected),
        calculation_date=parse_zoho_date(record.get("Calculation_Date")) or date.today(),
        fee_category=_fee_category(fee_category),
        fee_type=(fee_type or "management").lower(),
        description=f"{fee_category or 'Ongoing'} {fee_type or 'fee'}",
        provider_name=resolve_provider_name(record.get("Provider"), provider_map),
        adviser_name=record.get("Adviser") or record.get("Adviser_Name") or "",
        grouping_company=record.get("Superbia_Company") or "",
        status=status,
        allocated_amount=to_money(record.get("Allocated_Amount")),
    )


def build_payments(
    payment_records: list[dict],
    line_item_records: list[dict],
    provider_map: dict[str, str],
) -> list[Payment]:
    """Group line items under their parent payments, preserving CRM order."""
    by_payment: dict[str, list[PaymentLineItem]] = {}
    for record in line_item_records:
        payment_id = _lookup_id(record.get("Bank_Payment"))
        if not payment_id:
            continue
        by_payment.setdefault(payment_id, []).append(map_line_item(record))

    return [
        map_payment(record, by_payment.get(str(record["id"]), []), provider_map)
        for record in payment_records
    ]


# ============================================
# Domain -> CRM payloads
# ============================================

def match_record_payload(params: dict, name: str, matched_at: str) -> dict:
    """Payment_Matches record from createMatch / createMatchBatch params."""
    record = {
        "Name": name,
        "Bank_Payment_Ref_Match": {"id": params.get("paymentId")},
        "Payment_Line_Match": {"id": params.get("lineItemId")},
        "Matched_Amount": params.get("matchedAmount"),
        "Variance": params.get("variance") or 0,
        "Variance_Percentage": params.get("variancePercentage") or 0,
        "Match_Type": params.get("matchType") or "full",
        "Match_Method": params.get("matchMethod") or "manual",
        "Match_Quality": params.get("matchQuality") or "good",
        "Notes": params.get("notes") or "",
        "Matched_At": matched_at,
        "Confirmed": True,
    }
    if params.get("expectationId"):
        record["Expectation"] = {"id": params["expectationId"]}
    if params.get("reasonCode"):
        record["No_Match_Reason_Code"] = params["reasonCode"]
    return record
