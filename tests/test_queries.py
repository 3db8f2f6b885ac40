#!/usr/bin/env python3
"""
Test suite for sentiment/queries.py and sentiment/normalization.py
"""

import pytest
import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentiment.normalization import fold_to_ascii, has_foldable_characters
from sentiment.queries import build_queries, normalize_media_kind


class TestAsciiFolding:
    """Diacritics and smart quotes fold away; case and punctuation survive"""

    def test_french_accents(self):
        assert fold_to_ascii("Amélie") == "Amelie"

    def test_spanish(self):
        assert fold_to_ascii("Y tu mamá también") == "Y tu mama tambien"

    def test_tilde_and_umlaut(self):
        assert fold_to_ascii("El Niño über") == "El Nino uber"

    def test_smart_apostrophe_stripped(self):
        assert fold_to_ascii("Schindler’s List") == "Schindlers List"

    def test_non_decomposable_letters(self):
        assert fold_to_ascii("Ærø Straße") == "AEro Strasse"

    def test_case_and_punctuation_kept(self):
        assert fold_to_ascii("Dr. Strangelove: Or How") == "Dr. Strangelove: Or How"

    def test_empty(self):
        assert fold_to_ascii("") == ""

    @pytest.mark.parametrize("title,expected", [
        ("Amélie", True),
        ("Schindler’s List", True),
        ("Inception", False),
        ("Schindler's List", False),
        ("", False),
    ])
    def test_has_foldable_characters(self, title, expected):
        assert has_foldable_characters(title) is expected


class TestMediaKind:
    """Accepted media kind spellings map to movie / series"""

    @pytest.mark.parametrize("raw,expected", [
        ("movie", "movie"),
        ("MOVIE", "movie"),
        ("film", "movie"),
        ("series", "series"),
        ("TV_SHOW", "series"),
        ("tv", "series"),
        (" Series ", "series"),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_media_kind(raw) == expected

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            normalize_media_kind("podcast")

    def test_unknown_kind_rejected_by_builder(self):
        with pytest.raises(ValueError):
            build_queries("Inception", year=2010, media_kind="book")


class TestBuildQueries:
    """Ordered, duplicate-free query strategies"""

    def test_plain_title_with_year(self):
        assert build_queries("Inception", year=2010) == [
            "Inception 2010 movie",
            "Inception (2010) movie",
            "Inception movie",
        ]

    def test_series_uses_tv_show_noun(self):
        queries = build_queries("Breaking Bad", year=2008, media_kind="series")
        assert queries[0] == "Breaking Bad 2008 tv show"
        assert queries[-1] == "Breaking Bad tv show"
        assert all(q.endswith("tv show") for q in queries)

    def test_colon_title_adds_prefix_forms(self):
        title = "Star Wars: Episode IV - A New Hope"
        assert build_queries(title, year=1977) == [
            f"{title} 1977 movie",
            f"{title} (1977) movie",
            "Star Wars 1977 movie",
            "Star Wars (1977) movie",
            f"{title} movie",
        ]

    def test_diacritics_add_folded_forms(self):
        assert build_queries("Amélie", year=2001) == [
            "Amélie 2001 movie",
            "Amélie (2001) movie",
            "Amelie 2001 movie",
            "Amelie (2001) movie",
            "Amélie movie",
        ]

    def test_ascii_title_has_no_folded_forms(self):
        queries = build_queries("Inception", year=2010)
        assert len(queries) == 3

    def test_original_title_added_before_fallback(self):
        queries = build_queries("Downfall", original_title="Der Untergang", year=2004)
        assert queries[-2] == "Der Untergang 2004 movie"
        assert queries[-1] == "Downfall movie"

    def test_original_title_equal_to_title_ignored(self):
        assert build_queries("Inception", original_title="Inception", year=2010) == \
            build_queries("Inception", year=2010)

    def test_no_year_falls_back_to_title_and_noun(self):
        assert build_queries("Inception") == ["Inception movie"]

    def test_invalid_year_treated_as_unknown(self):
        assert build_queries("Inception", year="unknown") == ["Inception movie"]

    def test_year_string_accepted(self):
        assert build_queries("Inception", year="2010-07-15")[0] == "Inception 2010 movie"

    def test_empty_title_yields_bare_noun(self):
        assert build_queries("", year=2010) == ["movie"]
        assert build_queries("   ", media_kind="series") == ["tv show"]

    def test_whitespace_collapsed(self):
        assert build_queries("  The   Matrix ", year=1999)[0] == "The Matrix 1999 movie"

    def test_no_duplicates_and_no_empty_strings(self):
        queries = build_queries("Léon: The Professional", original_title="Léon", year=1994)
        assert len(queries) == len(set(queries))
        assert all(q.strip() for q in queries)

    def test_colon_with_diacritics_folds_prefix_too(self):
        queries = build_queries("Léon: The Professional", year=1994)
        assert "Leon 1994 movie" in queries
        assert "Leon: The Professional 1994 movie" in queries

    def test_deterministic(self):
        args = ("Amélie", "Le Fabuleux Destin d'Amélie Poulain", 2001, "movie")
        assert build_queries(*args) == build_queries(*args)

    def test_most_specific_first(self):
        queries = build_queries("Amélie", original_title="Le Fabuleux Destin", year=2001)
        assert queries[0] == "Amélie 2001 movie"
        assert queries[-1] == "Amélie movie"


TITLE_WORDS = [
    "Amélie", "Léon", "Niño", "Mamá", "Über", "Straße", "Ørsted", "Łódź",
    "Schindler’s", "“Quoted”", "Crème", "Brûlée", "The", "Night", "Return",
    "of", "King", "Matrix", "Hôtel", "Déjà", "Vu", "Citizen", "Kane",
]


def random_case(rng):
    """Title with optional colon subtitle, original title and year"""
    def words(low, high):
        return " ".join(rng.choice(TITLE_WORDS) for _ in range(rng.randint(low, high)))

    title = words(1, 3)
    if rng.random() < 0.5:
        title = f"{title}: {words(1, 3)}"
    original = words(1, 3) if rng.random() < 0.4 else None
    year = rng.choice([None, None, rng.randint(1920, 2030), str(rng.randint(1920, 2030))])
    kind = rng.choice(["movie", "series", "MOVIE", "TV_SHOW"])
    return title, original, year, kind


class TestQueryProperties:
    """Invariants over randomized titles with colons, diacritics and missing years"""

    @pytest.mark.parametrize("seed", range(200))
    def test_randomized_titles(self, seed):
        title, original, year, kind = random_case(random.Random(seed))

        queries = build_queries(title, original, year, kind)

        assert queries == build_queries(title, original, year, kind)
        assert queries
        assert len(queries) == len(set(queries))
        assert all(q and q == q.strip() for q in queries)
        noun = "tv show" if normalize_media_kind(kind) == "series" else "movie"
        assert queries[-1] == f"{title} {noun}"
        if year is None:
            assert not any(any(ch.isdigit() for ch in q) for q in queries)
