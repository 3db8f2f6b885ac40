#!/usr/bin/env python3
"""
Percentage extractor for search-result markup

Scans the whole document with the ordered PERCENTAGE_PATTERNS table and
returns the first in-range match. Makes no assumption about page structure:
when the provider's markup changes, extraction degrades to None.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sentiment.constants import CONTEXT_WINDOW, PERCENTAGE_PATTERNS

logger = logging.getLogger(__name__)


@dataclass
class Extraction:
    """One successful percentage match"""
    percentage: int
    context: str
    pattern: str


def _context(markup: str, start: int, end: int) -> str:
    """Matched text plus a little surrounding markup, whitespace collapsed"""
    lo = max(0, start - CONTEXT_WINDOW)
    hi = min(len(markup), end + CONTEXT_WINDOW)
    return ' '.join(markup[lo:hi].split())


def extract_percentage(markup) -> Optional[Extraction]:
    """
    Extract the audience "liked" percentage from raw markup

    Patterns are tried in table order; within a pattern every match in the
    document is considered, and the first integer within [0, 100] wins.
    Out-of-range values (e.g. "143% liked") are skipped, not errors.

    Returns:
        Extraction, or None when nothing matched
    """
    if not isinstance(markup, str) or not markup:
        return None

    for name, pattern, _description in PERCENTAGE_PATTERNS:
        for match in pattern.finditer(markup):
            try:
                value = int(match.group(1))
            except (TypeError, ValueError):
                continue
            if 0 <= value <= 100:
                logger.debug(f"Matched {name}: {value}%")
                return Extraction(
                    percentage=value,
                    context=_context(markup, match.start(), match.end()),
                    pattern=name,
                )
            logger.debug(f"Pattern {name} matched out-of-range value {value}% - skipping")

    return None
