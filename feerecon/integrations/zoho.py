# feerecon/integrations/zoho.py

"""
Zoho CRM integration for reading reconciliation data and writing matches.

All calls go through ZohoClient.invoke(action, params), which returns the
dispatch envelope the sync engine expects:

    {"success": True, "data": ...}
    {"success": False, "error": "...", "code": "ZOHO_RATE_LIMIT", "retryAfterSeconds": 60}
    {"success": False, "error": "..."}

Transport failures (connection errors, timeouts) are raised as
TransportFailure rather than folded into the envelope.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from feerecon.core.errors import RateLimited, TransportFailure
from feerecon.integrations.zoho_auth import ZohoTokenManager
from feerecon.integrations.zoho_mapping import (
    build_payments,
    build_provider_map,
    format_zoho_datetime,
    map_expectation,
    match_record_payload,
)
from feerecon.models import Expectation, Payment

logger = logging.getLogger(__name__)

API_VERSION = "crm/v6"
RATE_LIMIT_CODE = "ZOHO_RATE_LIMIT"
RATE_LIMIT_RETRY_AFTER = 60

FIELDS_CACHE_TTL_SECONDS = 600
COQL_PAGE_SIZE = 200
COQL_MAX_ITERATIONS = 100
COQL_PAGE_DELAY_SECONDS = 0.1
RECORDS_PAGE_SIZE = 200
RECORDS_MAX_PAGES = 100
HYDRATE_BATCH_SIZE = 100
HYDRATE_DELAY_SECONDS = 0.2
MAX_WRITE_BATCH = 100
DATA_CHECK_BATCH_SIZE = 50
DATA_CHECK_DELAY_SECONDS = 0.5

EXPECTATION_FIELDS = (
    "id,Plan_Policy_Reference,Client_1,Expected_Fee_Amount,Calculation_Date,Fee_Category,"
    "Fee_Type,Provider,Adviser_Name,Superbia_Company,Status,Allocated_Amount,Remaining_Amount"
)
PROVIDER_FIELDS = "Provider_ID,Name,Provider_Code,Provider_Group,Is_Payment_Source,Active"

VALUATION_FIELD_CANDIDATES = [
    "Valuation", "Current_Valuation", "Plan_Valuation", "Total_Valuation", "Fund_Value", "Current_Value",
]
FEE_PLAN_LOOKUP_CANDIDATES = ["Plan", "Plan_Name", "Plans", "Related_Plan", "Plan_ID"]
FEE_PERCENT_CANDIDATES = ["Fee_Percentage", "Percentage", "Fee_Percent", "Ongoing_Fee_Percentage", "Fee_%"]
FEE_CATEGORY_CANDIDATES = ["Fee_Category", "Category", "Fee_Type", "Type"]
ONGOING_FEE_MARKERS = ("ongoing", "recurring", "trail")


class ZohoApiError(Exception):
    """Zoho answered, but with an error payload."""


def resolve_field_api_name(fields: list[dict], candidates: list[str]) -> Optional[str]:
    """
    Pick the first field whose api_name matches a candidate, falling back to
    the field label. Field names vary between Zoho orgs.
    """
    lower = [c.lower() for c in candidates]
    for field in fields:
        if (field.get("api_name") or "").lower() in lower:
            return field.get("api_name")
    for field in fields:
        if (field.get("field_label") or "").lower() in lower:
            return field.get("api_name")
    return None


def _quote(value: Any) -> str:
    return "'" + str(value).replace("'", "\\'") + "'"


def _in_clause(values) -> str:
    if isinstance(values, (list, tuple, set)):
        return ", ".join(_quote(v) for v in values)
    return _quote(values)


def _batch_results(payload: dict) -> dict:
    results = [
        {
            "index": index,
            "status": (item or {}).get("status") or "error",
            "id": ((item or {}).get("details") or {}).get("id"),
            "message": (item or {}).get("message"),
        }
        for index, item in enumerate((payload or {}).get("data") or [])
    ]
    success_count = len([r for r in results if r["status"] == "success"])
    return {
        "batchResults": results,
        "successCount": success_count,
        "failedCount": len(results) - success_count,
    }


def _first_row_error(payload: dict) -> Optional[str]:
    rows = (payload or {}).get("data") or []
    if rows and isinstance(rows[0], dict) and rows[0].get("status") == "error":
        return rows[0].get("message") or rows[0].get("code") or "Record rejected"
    return None


class ZohoClient:
    """Async Zoho CRM v6 client with action-based dispatch."""

    def __init__(
        self,
        token_manager: ZohoTokenManager,
        api_domain: str = "https://www.zohoapis.eu",
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token_manager = token_manager
        self.base_url = f"{api_domain.rstrip('/')}/{API_VERSION}"
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep
        self._clock = clock
        self._fields_cache: dict[str, tuple[float, list[dict]]] = {}

        self._actions = {
            "getPayments": self.get_payments,
            "getPaymentLineItems": self.get_payment_line_items,
            "getExpectations": self.get_expectations,
            "getProviders": self.get_providers,
            "createMatch": self.create_match,
            "createMatchBatch": self.create_match_batch,
            "updateRecord": self.update_record_action,
            "updateRecordsBatch": self.update_records_batch_action,
            "dataCheck": self.data_check,
        }

    @classmethod
    def from_settings(cls, settings) -> "ZohoClient":
        token_manager = ZohoTokenManager(
            client_id=settings.zoho_client_id,
            client_secret=settings.zoho_client_secret,
            refresh_token=settings.zoho_refresh_token,
            accounts_url=settings.zoho_accounts_url,
        )
        return cls(token_manager, api_domain=settings.zoho_api_domain)

    async def aclose(self) -> None:
        await self._http.aclose()

    # ============================================
    # Dispatch
    # ============================================

    async def invoke(self, action: str, params: Optional[dict] = None) -> dict:
        handler = self._actions.get(action)
        if handler is None:
            return {"success": False, "error": f"Unknown action: {action}"}

        try:
            data = await handler(params or {})
        except RateLimited as e:
            logger.warning(f"Zoho {action} rate limited, retry after {e.retry_after_seconds}s")
            return {
                "success": False,
                "error": str(e),
                "code": RATE_LIMIT_CODE,
                "retryAfterSeconds": e.retry_after_seconds,
            }
        except TransportFailure:
            raise
        except Exception as e:
            logger.error(f"Zoho {action} failed: {e}")
            return {"success": False, "error": str(e) or "Unknown error"}

        return {"success": True, "data": data}

    # ============================================
    # HTTP plumbing
    # ============================================

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self.token_manager.get_valid_token()
        headers = {"Authorization": f"Zoho-oauthtoken {token}"}

        try:
            response = await self._http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TransportFailure(f"Zoho request {method} {path} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited("Rate limited", retry_after_seconds=RATE_LIMIT_RETRY_AFTER)
        if response.status_code == 401:
            self.token_manager.invalidate()

        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ZohoApiError(f"Invalid JSON from Zoho ({response.status_code})") from e

    # ============================================
    # Metadata
    # ============================================

    async def get_module_fields(self, module: str) -> list[dict]:
        cached = self._fields_cache.get(module)
        if cached and self._clock() - cached[0] < FIELDS_CACHE_TTL_SECONDS:
            return cached[1]

        response = await self._request("GET", "/settings/fields", params={"module": module})
        payload = self._json(response)
        if response.status_code >= 400:
            raise ZohoApiError(f"Failed to load fields for {module}: {payload.get('message') or response.status_code}")

        fields = payload.get("fields") or payload.get("data") or []
        self._fields_cache[module] = (self._clock(), fields)
        return fields

    async def resolve_field(self, module: str, candidates: list[str]) -> Optional[str]:
        return resolve_field_api_name(await self.get_module_fields(module), candidates)

    # ============================================
    # Reads
    # ============================================

    async def query_coql(self, query: str, max_iterations: int = COQL_MAX_ITERATIONS) -> list[dict]:
        """Run a COQL select, paging with limit/offset until a short page."""
        records = []
        offset = 0

        for _ in range(max_iterations):
            response = await self._request(
                "POST",
                "/coql",
                json={"select_query": f"{query} limit {COQL_PAGE_SIZE} offset {offset}"},
            )
            if response.status_code == 204:
                break

            payload = self._json(response)
            if payload.get("code") == "NODATA":
                break
            if payload.get("status") == "error":
                raise ZohoApiError(f"COQL error: {payload.get('message') or payload.get('code')}")

            page = payload.get("data") or []
            records.extend(page)
            if len(page) < COQL_PAGE_SIZE:
                break

            offset += COQL_PAGE_SIZE
            await self._sleep(COQL_PAGE_DELAY_SECONDS)

        return records

    async def fetch_all_records(self, module: str, params: Optional[dict] = None) -> list[dict]:
        """Page through a module with page tokens."""
        records = []
        page_token = None

        for _ in range(RECORDS_MAX_PAGES):
            query = dict(params or {})
            query["per_page"] = RECORDS_PAGE_SIZE
            if page_token:
                query["page_token"] = page_token

            response = await self._request("GET", f"/{module}", params=query)
            payload = self._json(response)
            if not payload or payload.get("code") == "NODATA":
                break
            if payload.get("status") == "error":
                raise ZohoApiError(f"Zoho API error: {payload.get('message') or payload.get('code')}")

            records.extend(payload.get("data") or [])

            info = payload.get("info") or {}
            page_token = info.get("next_page_token") or info.get("page_token")
            if not info.get("more_records") or not page_token:
                break

        return records

    async def hydrate_records_by_id(self, module: str, ids: list[str]) -> list[dict]:
        """Load full records for ids returned by a COQL id-only query."""
        records = []

        for start in range(0, len(ids), HYDRATE_BATCH_SIZE):
            batch = ids[start:start + HYDRATE_BATCH_SIZE]
            response = await self._request("GET", f"/{module}", params={"ids": ",".join(batch)})
            payload = self._json(response)

            if payload.get("status") == "error":
                raise ZohoApiError(f"Zoho hydration error: {payload.get('message')}")
            if payload.get("code") != "NODATA":
                records.extend(payload.get("data") or [])

            if start + HYDRATE_BATCH_SIZE < len(ids):
                await self._sleep(HYDRATE_DELAY_SECONDS)

        return records

    async def _select_ids(self, module: str, where: str) -> list[dict]:
        hits = await self.query_coql(f"select id from {module} where {where}")
        return await self.hydrate_records_by_id(module, [str(r["id"]) for r in hits])

    async def get_payments(self, params: dict) -> list[dict]:
        if params.get("status"):
            status_field = await self.resolve_field("Bank_Payments", ["Status"])
            if not status_field:
                raise ZohoApiError("Cannot resolve Bank_Payments Status field")
            return await self._select_ids("Bank_Payments", f"{status_field} in ({_in_clause(params['status'])})")
        return await self.fetch_all_records("Bank_Payments")

    async def get_payment_line_items(self, params: dict) -> list[dict]:
        if params.get("paymentId"):
            lookup = await self.resolve_field("Bank_Payment_Lines", ["Bank_Payment", "Bank Payment"])
            if not lookup:
                raise ZohoApiError("Cannot resolve Bank_Payment_Lines payment lookup")
            return await self._select_ids("Bank_Payment_Lines", f"{lookup} = {_quote(params['paymentId'])}")

        if params.get("status"):
            status_field = await self.resolve_field("Bank_Payment_Lines", ["Status"])
            if not status_field:
                raise ZohoApiError("Cannot resolve Bank_Payment_Lines Status field")
            return await self._select_ids(
                "Bank_Payment_Lines", f"{status_field} in ({_in_clause(params['status'])})"
            )

        return await self.fetch_all_records("Bank_Payment_Lines")

    async def get_expectations(self, params: dict) -> list[dict]:
        fields = await self.get_module_fields("Expectations")
        status_field = resolve_field_api_name(fields, ["Status", "Expectation_Status"])
        provider_field = resolve_field_api_name(fields, ["Provider", "Provider_Name"])
        company_field = resolve_field_api_name(fields, ["Superbia_Company"])
        date_field = resolve_field_api_name(fields, ["Calculation_Date"])

        conditions = []
        if params.get("status") and status_field:
            conditions.append(f"{status_field} in ({_in_clause(params['status'])})")
        if params.get("providerId") and provider_field:
            conditions.append(f"{provider_field} = {_quote(params['providerId'])}")
        if params.get("superbiaCompany") and company_field:
            conditions.append(f"{company_field} in ({_in_clause(params['superbiaCompany'])})")
        if params.get("dateFrom") and date_field:
            conditions.append(f"{date_field} >= {_quote(params['dateFrom'])}")
        if params.get("dateTo") and date_field:
            conditions.append(f"{date_field} <= {_quote(params['dateTo'])}")

        if conditions:
            return await self._select_ids("Expectations", " and ".join(conditions))
        return await self.fetch_all_records("Expectations", {"fields": EXPECTATION_FIELDS})

    async def get_providers(self, params: dict) -> list[dict]:
        return await self.fetch_all_records("Providers", {"fields": PROVIDER_FIELDS})

    # ============================================
    # Writes
    # ============================================

    async def create_records(self, module: str, records: list[dict]) -> dict:
        response = await self._request("POST", f"/{module}", json={"data": records, "trigger": []})
        return self._json(response)

    async def update_record(self, module: str, record_id: str, data: dict) -> dict:
        response = await self._request("PUT", f"/{module}/{record_id}", json={"data": [data]})
        return self._json(response)

    async def update_records_batch(self, module: str, records: list[dict]) -> dict:
        response = await self._request("PUT", f"/{module}", json={"data": records, "trigger": []})
        return self._json(response)

    async def create_match(self, params: dict) -> dict:
        now = format_zoho_datetime()
        record = match_record_payload(params, f"Match-{int(time.time() * 1000)}", now)
        payload = await self.create_records("Payment_Matches", [record])
        error = _first_row_error(payload)
        if error:
            raise ZohoApiError(f"Match record rejected: {error}")
        return payload

    async def create_match_batch(self, params: dict) -> dict:
        records = params.get("records")
        if not isinstance(records, list) or not records:
            raise ValueError("records required")
        if len(records) > MAX_WRITE_BATCH:
            raise ValueError(f"Max {MAX_WRITE_BATCH} records per batch")

        now = format_zoho_datetime()
        stamp = int(time.time() * 1000)
        batch = [
            match_record_payload(r, f"Match-{stamp}-{index}", now)
            for index, r in enumerate(records)
        ]
        return _batch_results(await self.create_records("Payment_Matches", batch))

    async def update_record_action(self, params: dict) -> dict:
        module, record_id, data = params.get("module"), params.get("recordId"), params.get("data")
        if not module or not record_id or not data:
            raise ValueError("module, recordId, data required")
        payload = await self.update_record(module, record_id, data)
        error = _first_row_error(payload)
        if error:
            raise ZohoApiError(f"Update of {module}/{record_id} rejected: {error}")
        return payload

    async def update_records_batch_action(self, params: dict) -> dict:
        module, records = params.get("module"), params.get("records")
        if not module or not isinstance(records, list):
            raise ValueError("module and records required")
        if len(records) > MAX_WRITE_BATCH:
            raise ValueError(f"Max {MAX_WRITE_BATCH} per batch")
        return _batch_results(await self.update_records_batch(module, records))

    # ============================================
    # Data check
    # ============================================

    async def data_check(self, params: dict) -> dict:
        """
        Look up plans and fee records for a set of policy references.

        Returns per-reference flags: planFound, hasFees, zeroValuation,
        ongoingFeeZeroPercent. Individual batch failures are logged and
        treated as "not found".
        """
        references = params.get("policyReferences")
        if not isinstance(references, list) or not references:
            raise ValueError("policyReferences array is required for dataCheck")

        unique_refs = list(dict.fromkeys(str(r).strip() for r in references if str(r or "").strip()))
        logger.info(f"Data check for {len(unique_refs)} policy references")

        found_plans, valuations = await self._find_plans(unique_refs)
        plans_with_fees, zero_percent = await self._find_fees(list(found_plans.values()))

        results = {}
        for ref in unique_refs:
            plan_id = found_plans.get(ref)
            results[ref] = {
                "planFound": bool(plan_id),
                "hasFees": plan_id in plans_with_fees if plan_id else False,
                "zeroValuation": bool(plan_id) and valuations.get(ref) == 0,
                "ongoingFeeZeroPercent": plan_id in zero_percent if plan_id else False,
                "planId": plan_id,
            }

        logger.info(
            f"Data check: {len(found_plans)} plans found, {len(plans_with_fees)} with fees, "
            f"{len(zero_percent)} with ongoing fee at 0%"
        )

        return {
            "totalChecked": len(unique_refs),
            "plansFound": len(found_plans),
            "plansWithFees": len(plans_with_fees),
            "results": results,
        }

    async def _find_plans(self, refs: list[str]) -> tuple[dict[str, str], dict[str, float]]:
        found: dict[str, str] = {}
        valuations: dict[str, float] = {}

        valuation_field = None
        try:
            valuation_field = await self.resolve_field("Plans", VALUATION_FIELD_CANDIDATES)
        except ZohoApiError as e:
            logger.warning(f"Failed to get Plans module fields for valuation: {e}")
        if not valuation_field:
            logger.warning("Could not resolve valuation field in Plans module")

        select = f"id, Policy_Ref, {valuation_field}" if valuation_field else "id, Policy_Ref"

        for start in range(0, len(refs), DATA_CHECK_BATCH_SIZE):
            batch = refs[start:start + DATA_CHECK_BATCH_SIZE]
            try:
                plans = await self.query_coql(f"select {select} from Plans where Policy_Ref in ({_in_clause(batch)})")
            except ZohoApiError as e:
                logger.warning(f"Plans query batch failed: {e}")
                plans = []

            for plan in plans:
                ref = str(plan.get("Policy_Ref") or "").strip()
                if not ref:
                    continue
                found[ref] = str(plan["id"])
                if valuation_field and valuation_field in plan:
                    valuations[ref] = _to_float(plan.get(valuation_field)) or 0.0

            if start + DATA_CHECK_BATCH_SIZE < len(refs):
                await self._sleep(DATA_CHECK_DELAY_SECONDS)

        return found, valuations

    async def _find_fees(self, plan_ids: list[str]) -> tuple[set[str], set[str]]:
        with_fees: set[str] = set()
        zero_percent: set[str] = set()
        if not plan_ids:
            return with_fees, zero_percent

        fields = await self.get_module_fields("Fees")
        plan_field = resolve_field_api_name(fields, FEE_PLAN_LOOKUP_CANDIDATES)
        if not plan_field:
            logger.warning("Could not resolve plan lookup field in Fees module")
            return with_fees, zero_percent

        percent_field = resolve_field_api_name(fields, FEE_PERCENT_CANDIDATES)
        category_field = resolve_field_api_name(fields, FEE_CATEGORY_CANDIDATES)
        select = ["id", plan_field] + [f for f in (percent_field, category_field) if f]

        for start in range(0, len(plan_ids), DATA_CHECK_BATCH_SIZE):
            batch = plan_ids[start:start + DATA_CHECK_BATCH_SIZE]
            try:
                fees = await self.query_coql(
                    f"select {', '.join(select)} from Fees where {plan_field} in ({_in_clause(batch)})"
                )
            except ZohoApiError as e:
                logger.warning(f"Fees query batch failed: {e}")
                fees = []

            for fee in fees:
                plan_ref = fee.get(plan_field)
                plan_id = str(plan_ref.get("id") or "") if isinstance(plan_ref, dict) else str(plan_ref or "")
                if not plan_id:
                    continue
                with_fees.add(plan_id)

                if percent_field and category_field:
                    category = str(fee.get(category_field) or "").lower()
                    is_ongoing = any(marker in category for marker in ONGOING_FEE_MARKERS)
                    if is_ongoing and _to_float(fee.get(percent_field)) in (0, None):
                        zero_percent.add(plan_id)

            if start + DATA_CHECK_BATCH_SIZE < len(plan_ids):
                await self._sleep(DATA_CHECK_DELAY_SECONDS)

        return with_fees, zero_percent


def _to_float(value: Any) -> Optional[float]:
    """Numeric CRM field; blank reads as 0, unparseable as None."""
    if value is None or value == "":
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if number != number else number


# ============================================
# Download
# ============================================

async def fetch_reconciliation_data(
    client: ZohoClient,
    read_delay_seconds: float = 0.2,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> tuple[list[Payment], list[Expectation]]:
    """
    Read providers, payments, line items and expectations one after another
    and map them onto the domain models.
    """
    providers = await client.get_providers({})
    await sleep(read_delay_seconds)
    payment_records = await client.get_payments({})
    await sleep(read_delay_seconds)
    line_item_records = await client.get_payment_line_items({})
    await sleep(read_delay_seconds)
    expectation_records = await client.get_expectations({})

    provider_map = build_provider_map(providers)
    payments = build_payments(payment_records, line_item_records, provider_map)
    expectations = [map_expectation(r, provider_map) for r in expectation_records]

    logger.info(
        f"Downloaded {len(payments)} payments, {len(line_item_records)} line items, "
        f"{len(expectations)} expectations from Zoho"
    )

    return payments, expectations
