"""
Unknown model tracking.

Collects invoice terms that did not map to a known model so a single
notification can list them once per process.
"""

import re
from typing import Iterable, List, Optional, Tuple

from metered_usage.config.logger import get_logger

LOGGER = get_logger("metered_usage.unknown_models")

_SUFFIX_WORDS = re.compile(r"\b(?:requests?|calls?|beyond|per)\b|\*|,$", re.IGNORECASE)
_DISCOUNTED_PREFIX = re.compile(r"^discounted\s+", re.IGNORECASE)
_USAGE_SUFFIX = re.compile(r"\s+usage$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

DEFAULT_GENERIC_KEYWORDS: Tuple[str, ...] = (
    "usage",
    "calls",
    "request",
    "requests",
    "cents",
    "beyond",
    "month",
    "day",
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
    "premium",
    "extra",
    "tool",
    "fast",
    "thinking",
    "token-based",
    "discounted",
)


def clean_term(phrase: str) -> str:
    """Strip generic suffix words from an extracted invoice phrase."""
    term = _DISCOUNTED_PREFIX.sub("", phrase.strip())
    term = _SUFFIX_WORDS.sub("", term)
    term = _WHITESPACE.sub(" ", term).strip()
    term = _USAGE_SUFFIX.sub("", term).strip()
    return term


class UnknownModelTracker:
    """Process-lifetime set of unrecognised model terms.

    One instance is created at process start and handed to every refresh.
    The set only grows; the notification flag flips once.
    """

    def __init__(self, generic_keywords: Optional[Iterable[str]] = None):
        if generic_keywords is None:
            generic_keywords = DEFAULT_GENERIC_KEYWORDS
        self._generic = frozenset(k.lower() for k in generic_keywords)
        self._terms: List[str] = []
        self._notified = False

    @property
    def terms(self) -> List[str]:
        return list(self._terms)

    def observe(self, phrase: str) -> bool:
        """Record a phrase; return True if it added a new term.

        Terms shorter than two characters, generic keywords, and
        case-insensitive substrings (either direction) of a known term are
        dropped.
        """
        term = clean_term(phrase)
        lowered = term.lower()
        if len(term) < 2 or lowered in self._generic:
            return False
        for existing in self._terms:
            known = existing.lower()
            if lowered in known or known in lowered:
                return False
        self._terms.append(term)
        LOGGER.info("Unknown model term recorded", extra={"term": term, "phrase": phrase})
        return True

    def should_notify(self) -> bool:
        """True the first time it is called with a non-empty set, then never again."""
        if self._notified or not self._terms:
            return False
        self._notified = True
        return True
