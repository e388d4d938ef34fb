from __future__ import annotations

import re
from typing import Optional


# Label patterns, most specific first. "Order" needs an explicit number marker so
# "Order submitted" or "Order details" never match.
_LABEL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.I)
    for p in (
        r"\brequisition\s*(?:#|no\.?|number|id)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]*[A-Z0-9])",
        r"\bconfirmation\s*(?:#|no\.?|number|code|id)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]*[A-Z0-9])",
        r"\border\s*(?:#|no\.?|number|id)\s*[:#]?\s*([A-Z0-9][A-Z0-9-]*[A-Z0-9])",
        r"\baccession\s*(?:#|no\.?|number|id)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]*[A-Z0-9])",
        r"\breference\s*(?:#|no\.?|number|id)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]*[A-Z0-9])",
    )
)


def extract_confirmation_number(text: str) -> Optional[str]:
    """
    Pull the order identifier out of a rendered success page.

    Identifiers must contain a digit, which filters out prose like "Confirmation email sent".
    """
    if not text:
        return None
    for pattern in _LABEL_PATTERNS:
        for m in pattern.finditer(text):
            candidate = m.group(1)
            if any(ch.isdigit() for ch in candidate):
                return candidate
    return None
