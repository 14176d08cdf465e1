"""
Invoice line classification.

Turns one free-form invoice line description into a typed usage record.

Extraction order:
1. "<N> token-based usage calls to <model>, totalling: $X"
2. "<N> <phrase> request(s)/calls [beyond|*|per ...]"
3. "<N> <word>"

Label order for the non token-based forms:
1. tool calls
2. extra fast premium requests (optionally naming the model in parentheses)
3. a known model family
4. unknown model, forwarded to the unknown model tracker
"""

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Sequence, Union

from metered_usage.config.logger import get_logger
from .unknown_models import UnknownModelTracker

LOGGER = get_logger("metered_usage.classifier")

MID_MONTH_MARKER = "Mid-month usage paid"
UNKNOWN_MODEL = "unknown-model"
TOOL_CALLS_LABEL = "tool-calls"
FAST_PREMIUM_LABEL = "fast-premium"
REQUEST_UNIT = "req"

CENT = Decimal("0.01")
MILLI = Decimal("0.001")


@dataclass(frozen=True)
class InvoiceLine:
    """One raw line of the monthly invoice feed."""
    description: str
    cents: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "InvoiceLine":
        """Build a line from the feed, tolerating missing or odd fields."""
        cents = data.get("cents")
        if isinstance(cents, bool) or not isinstance(cents, (int, float)):
            cents = None
        elif isinstance(cents, float):
            cents = int(cents)
        return cls(description=str(data.get("description") or ""), cents=cents)


@dataclass(frozen=True)
class UsageLineItem:
    """A billable event, or the synthetic mid-month payment line."""
    display_calculation: str
    total_dollars: str
    raw_description: str
    model_name: str = UNKNOWN_MODEL
    is_discounted: bool = False
    request_count: Optional[int] = None
    cost_per_request: Optional[Decimal] = None
    is_mid_month_payment: bool = False


@dataclass(frozen=True)
class MidMonthCredit:
    """Dollar amount of one mid-month payment line, always positive."""
    amount: Decimal


@dataclass(frozen=True)
class Padding:
    """Zero-padding widths shared by every line of one month."""
    count_width: int = 1
    cost_width: int = len("0.000")


@dataclass(frozen=True)
class ExtractedCount:
    """Request count and free-text phrase pulled from a description."""
    request_count: int
    phrase: str
    model: Optional[str] = None
    is_totalling: bool = False


ClassifiedLine = Union[UsageLineItem, MidMonthCredit, None]


# --- count extractors ------------------------------------------------------

_TOKEN_BASED = re.compile(r"^(\d+) token-based usage calls to ([\w.-]+), totalling: \$(?:[\d.]+)")
_GENERAL = re.compile(r"^(\d+)\s+(.+?)(?: request| calls)?(?: beyond|\*| per|$)", re.IGNORECASE)
_LEADING = re.compile(r"^(\d+)(?:\s+([\w.-]+))?")


def _token_based(description: str) -> Optional[ExtractedCount]:
    match = _TOKEN_BASED.match(description)
    if not match:
        return None
    return ExtractedCount(int(match.group(1)), match.group(2), model=match.group(2), is_totalling=True)


def _general(description: str) -> Optional[ExtractedCount]:
    match = _GENERAL.match(description)
    if not match:
        return None
    return ExtractedCount(int(match.group(1)), match.group(2).strip())


def _leading(description: str) -> Optional[ExtractedCount]:
    match = _LEADING.match(description)
    if not match:
        return None
    return ExtractedCount(int(match.group(1)), match.group(2) or "")


COUNT_EXTRACTORS: Sequence[Callable[[str], Optional[ExtractedCount]]] = (
    _token_based,
    _general,
    _leading,
)


def extract_count(description: str) -> Optional[ExtractedCount]:
    """Return the first extraction that matches, or None if none do."""
    for extractor in COUNT_EXTRACTORS:
        result = extractor(description)
        if result is not None:
            return result
    return None


# --- label matchers --------------------------------------------------------

KNOWN_MODEL_FAMILIES: Sequence[str] = (
    r"claude-3-(?:opus|sonnet|haiku)",
    r"claude-3\.[57]-sonnet(?:-[\w-]+)?(?:-max)?",
    r"claude-4-(?:sonnet|opus)(?:-thinking)?",
    r"gpt-4(?:\.\d+|o-128k|o|-preview)?",
    r"gpt-3\.5-turbo",
    r"gemini-1\.5-flash-500k",
    r"gemini-2[.-]5-pro(?:-exp-\d{2}-\d{2}|-preview-\d{2}-\d{2}|-exp-max)?",
    r"gemini-2\.5-flash",
    r"o[134](?:-mini)?",
    r"deepseek-(?:r1|v3)",
)

_KNOWN_MODEL = re.compile(
    r"\b(?:discounted\s+)?(" + "|".join(KNOWN_MODEL_FAMILIES) + r")\b",
    re.IGNORECASE,
)
_EXTRA_FAST = re.compile(r"extra fast premium requests? \(([^)]+)\)", re.IGNORECASE)


def match_tool_calls(text: str) -> Optional[str]:
    return TOOL_CALLS_LABEL if "tool calls" in text else None


def match_extra_fast(text: str) -> Optional[str]:
    if "extra fast premium request" not in text:
        return None
    match = _EXTRA_FAST.search(text)
    return match.group(1) if match else FAST_PREMIUM_LABEL


def match_known_model(text: str) -> Optional[str]:
    match = _KNOWN_MODEL.search(text)
    return match.group(1) if match else None


LABEL_MATCHERS: Sequence[Callable[[str], Optional[str]]] = (
    match_tool_calls,
    match_extra_fast,
    match_known_model,
)


def resolve_label(text: str) -> Optional[str]:
    """Try each label matcher in priority order."""
    for matcher in LABEL_MATCHERS:
        label = matcher(text)
        if label is not None:
            return label
    return None


# --- formatting ------------------------------------------------------------

def format_dollars(amount: Decimal) -> str:
    """Format a signed dollar amount as ``$1.23`` or ``-$1.23``."""
    rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded < 0:
        return f"-${-rounded:.2f}"
    return f"${rounded:.2f}"


def cost_per_request(cents: int, request_count: int) -> Decimal:
    """Dollars per request, rounded to a tenth of a cent."""
    return (Decimal(cents) / Decimal(request_count) / 100).quantize(MILLI, rounding=ROUND_HALF_UP)


def classify_line(
    line: InvoiceLine,
    padding: Padding,
    tracker: Optional[UnknownModelTracker] = None,
) -> ClassifiedLine:
    """Classify one invoice line.

    Args:
        line: Raw invoice line
        padding: Widths computed across the whole month
        tracker: Receives phrases that resolve to no known model

    Returns:
        A UsageLineItem, a MidMonthCredit, or None when the line is skipped
    """
    description = line.description
    if line.cents is None:
        LOGGER.debug("Skipping invoice line without cents", extra={"description": description})
        return None

    if MID_MONTH_MARKER in description:
        return MidMonthCredit(amount=abs(Decimal(line.cents)) / 100)

    try:
        extracted = extract_count(description)
    except ValueError as e:
        LOGGER.warning("Could not parse request count", extra={"description": description, "error": str(e)})
        return None
    if extracted is None:
        LOGGER.info("Skipping unparsable invoice line", extra={"description": description})
        return None
    if extracted.request_count == 0:
        LOGGER.debug("Skipping invoice line with 0 requests", extra={"description": description})
        return None

    if extracted.model is not None:
        model_name = extracted.model
    else:
        model_name = resolve_label(description) or UNKNOWN_MODEL
        if model_name == UNKNOWN_MODEL:
            LOGGER.info("Could not determine model", extra={"description": description})
            if tracker is not None:
                tracker.observe(extracted.phrase)

    per_request = cost_per_request(line.cents, extracted.request_count)
    count_text = str(extracted.request_count).zfill(padding.count_width)
    cost_text = f"{per_request:.3f}".rjust(padding.cost_width, "0")
    approx = "~" if extracted.is_totalling else ""

    return UsageLineItem(
        display_calculation=f"{count_text} {REQUEST_UNIT} @ ${cost_text}{approx}",
        total_dollars=format_dollars(Decimal(line.cents) / 100),
        raw_description=description,
        model_name=model_name,
        is_discounted="discounted" in description.lower(),
        request_count=extracted.request_count,
        cost_per_request=per_request,
    )
