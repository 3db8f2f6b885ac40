#!/usr/bin/env python3
"""
Query strategy generator

Builds the ordered list of search queries tried for one title, most specific
first. Pure and deterministic: the same (title, original title, year, kind)
always yields the same list, which keeps failure logs comparable run to run.

Strategy order:
1. "{title} {year} {noun}"
2. "{title} ({year}) {noun}"
3. Same two forms for the part of the title before the first colon
4. ASCII-folded versions of the year forms (diacritics, smart quotes)
5. Original-language title with year
6. "{title} {noun}" fallback
"""

from typing import List, Optional

from sentiment.constants import KIND_NOUNS, MEDIA_KIND_ALIASES
from sentiment.normalization import fold_to_ascii, has_foldable_characters


def normalize_media_kind(media_kind: str) -> str:
    """Map any accepted media kind spelling to 'movie' or 'series'"""
    key = (media_kind or '').strip().lower()
    if key not in MEDIA_KIND_ALIASES:
        raise ValueError(f"Unknown media kind: {media_kind!r}")
    return MEDIA_KIND_ALIASES[key]


def _coerce_year(year) -> Optional[int]:
    """Return a usable year or None (bad values mean 'year unknown')"""
    if year is None or isinstance(year, bool):
        return None
    try:
        value = int(str(year).strip()[:4])
    except ValueError:
        return None
    return value if value > 0 else None


def _year_forms(base: str, year: Optional[int], noun: str) -> List[str]:
    if not base or not year:
        return []
    return [
        f"{base} {year} {noun}",
        f"{base} ({year}) {noun}",
    ]


def build_queries(title: str, original_title: Optional[str] = None,
                  year: Optional[int] = None, media_kind: str = 'movie') -> List[str]:
    """
    Build candidate search queries for a title

    Args:
        title: Display title
        original_title: Original-language title, if any
        year: Release year, if known
        media_kind: 'movie' or 'series' (legacy spellings accepted)

    Returns:
        Ordered, duplicate-free list of non-empty query strings

    Examples:
        >>> build_queries("Inception", year=2010)
        ['Inception 2010 movie', 'Inception (2010) movie', 'Inception movie']
    """
    noun = KIND_NOUNS[normalize_media_kind(media_kind)]
    title = ' '.join((title or '').split())
    original = ' '.join((original_title or '').split())
    year = _coerce_year(year)

    # Malformed input still gets the fallback query
    if not title:
        return [noun]

    candidates = _year_forms(title, year, noun)

    bases = [title]
    if ':' in title:
        prefix = title.split(':', 1)[0].strip()
        if prefix and prefix != title:
            bases.append(prefix)
            candidates.extend(_year_forms(prefix, year, noun))

    for base in bases:
        if has_foldable_characters(base):
            candidates.extend(_year_forms(fold_to_ascii(base), year, noun))

    if original and original != title:
        if year:
            candidates.append(f"{original} {year} {noun}")
        else:
            candidates.append(f"{original} {noun}")

    candidates.append(f"{title} {noun}")

    queries = []
    seen = set()
    for query in candidates:
        query = query.strip()
        if query and query not in seen:
            seen.add(query)
            queries.append(query)

    return queries
