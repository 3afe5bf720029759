# feerecon/integrations/claude.py

"""
Claude AI integration for variance explanations.

When a staged pair sits outside tolerance the user has to justify it in the
confirmation notes. Claude drafts a short explanation of the likely cause;
without an API key, or on any API error, a deterministic summary is returned.
"""

from functools import lru_cache
import logging

from anthropic import Anthropic

from feerecon.config import get_settings
from feerecon.models import Expectation, PaymentLineItem, PendingMatch

logger = logging.getLogger(__name__)

# Model to use
MODEL = "claude-sonnet-4-20250514"


@lru_cache()
def get_client() -> Anthropic:
    return Anthropic(api_key=get_settings().anthropic_api_key)


def fallback_explanation(pending: PendingMatch) -> str:
    direction = "more" if pending.variance > 0 else "less"
    return (
        f"The provider paid {abs(pending.variance)} {direction} than expected "
        f"({pending.variance_percentage:+}%). Check whether the fee basis, "
        f"valuation date or fee rate changed before confirming."
    )


async def explain_variance(
    pending: PendingMatch,
    line_item: PaymentLineItem,
    expectation: Expectation,
) -> str:
    """
    Generate a short, human-readable explanation for a fee variance.
    """
    settings = get_settings()
    if not settings.enable_ai_explanations or not settings.anthropic_api_key:
        return fallback_explanation(pending)

    prompt = f"""You are a fee reconciliation assistant for a financial advice firm.
Provider statements list fees paid per client plan; the firm's CRM holds the fee it expected.

Explain this variance in plain English. Be concise (2-3 sentences max).
Suggest the most likely cause and what to check. Don't repeat the raw data.

PAID (provider statement):
- Client: {line_item.client_name}
- Plan reference: {line_item.plan_reference}
- Fee: {line_item.fee_category.value} {line_item.fee_type or ''}
- Amount: £{line_item.amount}

EXPECTED (CRM):
- Client: {expectation.client_name}
- Plan reference: {expectation.plan_reference}
- Fee: {expectation.fee_category.value} {expectation.fee_type}
- Calculated on: {expectation.calculation_date}
- Amount: £{expectation.expected_amount}

VARIANCE: £{pending.variance} ({pending.variance_percentage}%)"""

    try:
        response = get_client().messages.create(
            model=MODEL,
            max_tokens=200,
            messages=[{"role": "user", "content": prompt}]
        )
        return response.content[0].text
    except Exception as e:
        # Fall back to a plain summary
        logger.warning(f"Claude API error: {e}")
        return fallback_explanation(pending)
