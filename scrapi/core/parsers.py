"""
Shared parsing utilities for job inputs and provider payloads.
"""

import re
from typing import Any

from scrapi.core.constants import FALLBACK_LOCATION

# "plumbers near me in Boston, Massachusetts, United States"
_LOCATION_SUFFIX_RE = re.compile(r"\bin (.*?, .*?, United States)$")


def extract_location_from_query(query: str) -> str:
    """
    Extract the geo location embedded at the end of a batch query.

    Examples:
        "plumbers in Austin, Texas, United States" -> "Austin, Texas, United States"
        "plumbers near me" -> "United States"
    """
    match = _LOCATION_SUFFIX_RE.search(query.strip())
    return match.group(1) if match else FALLBACK_LOCATION


def coerce_str(value: Any) -> str | None:
    """Return a stripped string, or None for empty/missing values."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None
