"""Synchronous safety preflight for user queries.

Runs before any external call. Fail-closed: a match blocks the request.
"""

import re
from typing import List, Optional, Pattern

UNSAFE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\b(build|make|buy|sell)\s+(a|an)?\s*(bomb|explosive|grenade|gun|firearm|pipe\s*bomb)\b", re.IGNORECASE),
    re.compile(r"\b(exploit|zero[-\s]?day|rce|priv[-\s]?esc|backdoor|keylogger|ransomware|malware)\b", re.IGNORECASE),
    re.compile(r"\b(ddos|sql\s*injection|xss|csrf|credential\s*stuffing|bruteforce)\b", re.IGNORECASE),
    re.compile(r"\b(paywall|bypass|crack|torrent|warez|license\s*key|activation\s*key)\b", re.IGNORECASE),
    re.compile(r"\b(self[-\s]?harm|suicide|kill\s*myself|how\s*to\s*die)\b", re.IGNORECASE),
    re.compile(r"\b(ssn|social\s*security\s*number|credit\s*card|cvv|dob|home\s*address)\b", re.IGNORECASE),
    re.compile(r"\b(child|minor).*(sexual|porn|explicit)", re.IGNORECASE),
]

EMPTY_QUERY_REASON = "Empty or meaningless query"


def check(query: Optional[str]) -> Optional[str]:
    """Return a rejection reason, or None when the query may proceed."""
    if not query or not query.strip():
        return EMPTY_QUERY_REASON
    for pattern in UNSAFE_PATTERNS:
        if pattern.search(query):
            return f"Disallowed content: {pattern.pattern}"
    return None
