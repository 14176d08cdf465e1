"""
Monthly usage construction.

Applies the line classifier across one month of invoice lines.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Tuple

from metered_usage.config.logger import get_logger
from .classifier import (
    MID_MONTH_MARKER,
    MILLI,
    InvoiceLine,
    MidMonthCredit,
    Padding,
    UsageLineItem,
    classify_line,
    extract_count,
    format_dollars,
)
from .unknown_models import UnknownModelTracker

LOGGER = get_logger("metered_usage.month_builder")

MID_MONTH_LABEL = "Mid-month payment"


@dataclass(frozen=True)
class MonthUsage:
    """Usage-based charges for one calendar month."""
    month: int
    year: int
    items: Tuple[UsageLineItem, ...] = ()
    has_unpaid_mid_month_invoice: bool = False
    mid_month_payment_total: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate the month is a calendar month."""
        if not 1 <= self.month <= 12:
            raise ValueError("month must be between 1 and 12")

    @property
    def usage_items(self) -> List[UsageLineItem]:
        """Items excluding the synthetic mid-month payment line."""
        return [item for item in self.items if not item.is_mid_month_payment]


def compute_padding(lines: Iterable[InvoiceLine]) -> Padding:
    """Find the widest request count and per-request cost of a month.

    Lines without cents and mid-month payments do not take part.
    """
    max_count = 0
    max_cost_cents = Decimal("0")
    for line in lines:
        if line.cents is None or MID_MONTH_MARKER in line.description:
            continue
        try:
            extracted = extract_count(line.description)
        except ValueError:
            continue
        if extracted is None or extracted.request_count <= 0:
            continue
        max_count = max(max_count, extracted.request_count)
        max_cost_cents = max(max_cost_cents, Decimal(line.cents) / extracted.request_count)

    count_width = len(str(max_count)) if max_count > 0 else 1
    max_cost = (max_cost_cents / 100).quantize(MILLI, rounding=ROUND_HALF_UP)
    return Padding(count_width=count_width, cost_width=len(f"{max_cost:.3f}"))


def mid_month_payment_item(total: Decimal, description: str) -> UsageLineItem:
    """Display line for the cumulative mid-month payment."""
    return UsageLineItem(
        display_calculation=f"{MID_MONTH_LABEL}: {format_dollars(total)}",
        total_dollars=format_dollars(-total),
        raw_description=description,
        model_name=MID_MONTH_LABEL,
        is_mid_month_payment=True,
    )


def build_month(
    month: int,
    year: int,
    raw_lines: Sequence[InvoiceLine],
    has_unpaid_mid_month_invoice: bool = False,
    tracker: Optional[UnknownModelTracker] = None,
) -> MonthUsage:
    """Build the usage record of one month from its invoice lines.

    Items keep invoice order. Every mid-month payment line folds into a
    single synthetic item carrying the running total, kept at the position
    of the first payment line.

    Args:
        month: Calendar month (1-12)
        year: Calendar year
        raw_lines: Invoice lines in feed order
        has_unpaid_mid_month_invoice: Passed through from the feed
        tracker: Unknown model tracker shared across refreshes

    Returns:
        MonthUsage for the month
    """
    padding = compute_padding(raw_lines)
    items: List[UsageLineItem] = []
    payment_index: Optional[int] = None
    payment_total = Decimal("0")

    for line in raw_lines:
        result = classify_line(line, padding, tracker)
        if result is None:
            continue
        if isinstance(result, MidMonthCredit):
            payment_total += result.amount
            payment_item = mid_month_payment_item(payment_total, line.description)
            if payment_index is None:
                payment_index = len(items)
                items.append(payment_item)
            else:
                items[payment_index] = payment_item
            LOGGER.info(
                "Mid-month payment added",
                extra={"amount": str(result.amount), "total": str(payment_total)},
            )
            continue
        items.append(result)

    LOGGER.info(
        "Month usage built",
        extra={"month": month, "year": year, "items": len(items), "lines": len(raw_lines)},
    )
    return MonthUsage(
        month=month,
        year=year,
        items=tuple(items),
        has_unpaid_mid_month_invoice=has_unpaid_mid_month_invoice,
        mid_month_payment_total=payment_total,
    )


def build_month_from_invoice(
    month: int,
    year: int,
    invoice: dict,
    tracker: Optional[UnknownModelTracker] = None,
) -> MonthUsage:
    """Build a month straight from a monthly invoice feed payload."""
    raw_items = invoice.get("items") or []
    lines = [InvoiceLine.from_dict(item) for item in raw_items if isinstance(item, dict)]
    return build_month(
        month,
        year,
        lines,
        has_unpaid_mid_month_invoice=bool(invoice.get("hasUnpaidMidMonthInvoice", False)),
        tracker=tracker,
    )
