#!/usr/bin/env python3
"""
ASCII folding for search-query titles

Search engines match "Amelie" and "Amélie" differently, so the query
generator emits folded variants of titles carrying diacritics or typographic
quotes. Unlike lookup normalization this keeps case and punctuation: the
folded title must still read as the title.
"""

import unicodedata

from sentiment.constants import ASCII_FOLD_EXTRAS, TYPOGRAPHIC_QUOTES


def fold_to_ascii(text: str) -> str:
    """
    Fold a title to plain ASCII letters

    Steps:
    1. Replace letters NFD cannot decompose (ß, æ, ø, ł ...)
    2. Strip typographic quote marks
    3. NFD-decompose and drop combining marks (category 'Mn')
    4. Collapse whitespace

    Examples:
        >>> fold_to_ascii("Amélie")
        'Amelie'

        >>> fold_to_ascii("Y tu mamá también")
        'Y tu mama tambien'

        >>> fold_to_ascii("Schindler’s List")
        'Schindlers List'
    """
    if not text:
        return ''

    for source, target in ASCII_FOLD_EXTRAS.items():
        text = text.replace(source, target)

    for quote in TYPOGRAPHIC_QUOTES:
        text = text.replace(quote, '')

    text = unicodedata.normalize('NFD', text)
    text = ''.join(c for c in text if unicodedata.category(c) != 'Mn')

    return ' '.join(text.split())


def has_foldable_characters(text: str) -> bool:
    """True when folding would change the text (diacritics or smart quotes present)"""
    if not text:
        return False
    return fold_to_ascii(text) != ' '.join(text.split())
