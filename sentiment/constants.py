#!/usr/bin/env python3
"""
Shared constants for the sentiment acquisition pipeline

Single source of truth for media kinds, provider status codes, failure
categories and the percentage pattern table.
DO NOT duplicate these lists in other modules - import from here instead.
"""

import re

# Media kinds as stored in the catalog and the queue file
MEDIA_KIND_MOVIE = 'movie'
MEDIA_KIND_SERIES = 'series'

MEDIA_KINDS = (MEDIA_KIND_MOVIE, MEDIA_KIND_SERIES)

# Noun appended to every search query
KIND_NOUNS = {
    MEDIA_KIND_MOVIE: 'movie',
    MEDIA_KIND_SERIES: 'tv show',
}

# Spellings seen in older queue files and catalog exports
MEDIA_KIND_ALIASES = {
    'movie': MEDIA_KIND_MOVIE,
    'film': MEDIA_KIND_MOVIE,
    'series': MEDIA_KIND_SERIES,
    'tv': MEDIA_KIND_SERIES,
    'tv_show': MEDIA_KIND_SERIES,
    'tv show': MEDIA_KIND_SERIES,
    'show': MEDIA_KIND_SERIES,
}

# Typographic quote marks stripped by ASCII folding
TYPOGRAPHIC_QUOTES = (
    '‘',  # left single
    '’',  # right single / apostrophe
    '‚',  # single low-9
    '‛',  # single high-reversed-9
    '“',  # left double
    '”',  # right double
    '„',  # double low-9
    '‟',  # double high-reversed-9
    '′',  # prime
    '″',  # double prime
    '«',  # left guillemet
    '»',  # right guillemet
    '‹',  # single left guillemet
    '›',  # single right guillemet
)

# Letters NFD cannot decompose into base + combining mark
ASCII_FOLD_EXTRAS = {
    'ß': 'ss',  # ß
    'æ': 'ae',  # æ
    'Æ': 'AE',
    'œ': 'oe',  # œ
    'Œ': 'OE',
    'ø': 'o',   # ø
    'Ø': 'O',
    'ł': 'l',   # ł
    'Ł': 'L',
    'đ': 'd',   # đ
    'Đ': 'D',
    'ð': 'd',   # ð
    'þ': 'th',  # þ
}

# DataForSEO status codes
# https://docs.dataforseo.com/v3/appendix/errors/
STATUS_OK = 20000
STATUS_TASK_CREATED = 20100
STATUS_TASK_IN_QUEUE = 40602
STATUS_TASK_HANDED = 40601

TASK_ACCEPTED_STATUSES = (STATUS_OK, STATUS_TASK_CREATED)
TASK_PENDING_STATUSES = (STATUS_TASK_IN_QUEUE, STATUS_TASK_HANDED)

# Defaults used when the response omits a cost field (USD per request)
DEFAULT_COST_PER_REQUEST = 0.0006

# Failure categories recorded in the failure log
FAILURE_SUBMISSION = 'submission_failed'
FAILURE_WAIT_TIMEOUT = 'wait_timed_out'
FAILURE_FETCH = 'fetch_failed'
FAILURE_PAYLOAD_EMPTY = 'payload_empty'
FAILURE_NO_MATCH = 'no_match'

TRANSIENT_FAILURES = (
    FAILURE_SUBMISSION,
    FAILURE_WAIT_TIMEOUT,
    FAILURE_FETCH,
    FAILURE_PAYLOAD_EMPTY,
)

# Catalog sentiment states (tri-state, never conflated)
SENTIMENT_UNATTEMPTED = 'unattempted'
SENTIMENT_EXHAUSTED = 'exhausted'
SENTIMENT_FOUND = 'found'

SENTIMENT_STATES = (SENTIMENT_UNATTEMPTED, SENTIMENT_EXHAUSTED, SENTIMENT_FOUND)

# Resolver outcomes
OUTCOME_FOUND = 'found'
OUTCOME_NOT_FOUND = 'not_found'
OUTCOME_TRANSIENT = 'transient_failure'

# Percentage pattern table, tried strictly in this order.
# Each pattern captures the integer in group 1. The (?<![\d.]) guard stops
# "143%" from being read as "43%".
_PCT = r'(?<![\d.])(\d{1,3})\s*%'

PERCENTAGE_PATTERNS = [
    ('liked_this_title',
     re.compile(_PCT + r'\s*liked\s+this\s+(?:movie|film|show|series|tv\s*show)', re.IGNORECASE),
     'Knowledge panel line: "91% liked this movie"'),
    ('users_liked',
     re.compile(_PCT + r'\s*of\s+(?:google\s+)?(?:users|people|viewers)\s+liked', re.IGNORECASE),
     'Long form: "91% of Google users liked this"'),
    ('tag_liked_this',
     re.compile(r'>\s*' + _PCT + r'\s*(?:<[^>]{0,200}>\s*)*liked\s+this', re.IGNORECASE),
     'Percentage in its own element followed by "liked this"'),
    ('liked_it',
     re.compile(_PCT + r'\s*liked\b', re.IGNORECASE),
     'Short form: "91% liked"'),
    ('liked_by',
     re.compile(r'liked\s+by\s+' + _PCT, re.IGNORECASE),
     'Inverted: "liked by 91%"'),
    ('percent_liked',
     re.compile(r'(?<![\d.])(\d{1,3})\s*percent\s+liked', re.IGNORECASE),
     'Spelled out: "91 percent liked"'),
    ('audience_score',
     re.compile(r'audience\s+score\s*[:\-]?\s*' + _PCT, re.IGNORECASE),
     'Review aggregator label: "Audience score: 91%"'),
    ('approval',
     re.compile(_PCT + r'\s*(?:approval|approve)\b', re.IGNORECASE),
     'Approval rating: "91% approval"'),
    ('positive',
     re.compile(_PCT + r'\s*positive\b', re.IGNORECASE),
     'Positive share: "91% positive"'),
]

# Characters of surrounding markup kept with a match for diagnostics
CONTEXT_WINDOW = 40
