"""Tests for deterministic naming."""

import re

import pytest

from convergence.naming import (
    HASH_VERSION,
    UNIQUE_STRING_LENGTH,
    deterministic_guid,
    truncate_then_suffix,
    unique_name,
    unique_string,
)

RG_ID = "/subscriptions/00000000-0000-0000-0000-000000000001/resourceGroups/rg-test"


class TestUniqueString:
    """Tests for the unique string hash."""

    def test_same_seeds_same_result(self) -> None:
        assert unique_string(RG_ID, "fnapp") == unique_string(RG_ID, "fnapp")

    def test_different_seeds_differ(self) -> None:
        assert unique_string(RG_ID, "fnapp") != unique_string(RG_ID, "fnapp2")

    def test_seed_boundaries_matter(self) -> None:
        """Joining "ab"+"c" must not collide with "a"+"bc"."""
        assert unique_string("ab", "c") != unique_string("a", "bc")

    def test_format(self) -> None:
        value = unique_string(RG_ID)

        assert len(value) == UNIQUE_STRING_LENGTH
        assert re.fullmatch(r"[a-z2-7]+", value)

    def test_requires_a_seed(self) -> None:
        with pytest.raises(ValueError):
            unique_string()

    def test_lone_surrogate_rejected(self) -> None:
        with pytest.raises(ValueError, match="not valid unicode"):
            unique_string("\ud800")

    def test_hash_version_is_pinned(self) -> None:
        assert HASH_VERSION == "v1"


class TestDeterministicGuid:
    """Tests for guid()."""

    def test_stable_and_well_formed(self) -> None:
        first = deterministic_guid(RG_ID, "site", "role")
        second = deterministic_guid(RG_ID, "site", "role")

        assert first == second
        assert re.fullmatch(r"[0-9a-f]{8}-[0-9a-f]{4}-5[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}", first)

    def test_seed_sensitive(self) -> None:
        assert deterministic_guid(RG_ID, "a") != deterministic_guid(RG_ID, "b")


class TestTruncation:
    """Tests for truncate-then-suffix naming."""

    def test_short_base_untouched(self) -> None:
        assert truncate_then_suffix("st", "abc", 24) == "stabc"

    def test_base_truncated_suffix_kept(self) -> None:
        result = truncate_then_suffix("averyveryverylongstoragebase", "suffix1234567", 24)

        assert len(result) == 24
        assert result.endswith("suffix1234567")
        assert result == "averyveryve" + "suffix1234567"

    def test_suffix_longer_than_limit_raises(self) -> None:
        with pytest.raises(ValueError):
            truncate_then_suffix("base", "x" * 30, 24)

    def test_unique_name_truncates_before_hashing(self) -> None:
        """The hash depends on the seeds only, never on the truncated base."""
        long_base = "stfunctionappwithaverylongname"
        short = unique_name(long_base, 24, RG_ID)
        other_base = unique_name("st", 24, RG_ID)

        assert len(short) == 24
        assert short.endswith(unique_string(RG_ID))
        assert other_base == "st" + unique_string(RG_ID)

    def test_unique_name_is_deterministic(self) -> None:
        assert unique_name("kv-fnapp-", 24, RG_ID) == unique_name("kv-fnapp-", 24, RG_ID)
