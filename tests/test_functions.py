"""Tests for the pure built-in template functions."""

import pytest

from convergence.errors import EvaluationError
from convergence.functions import PURE_FUNCTIONS, build_resource_id

SUB = "00000000-0000-0000-0000-000000000001"


def call(name: str, *args: object) -> object:
    return PURE_FUNCTIONS[name](*args)


class TestStringFunctions:
    """Tests for string manipulation functions."""

    def test_concat_strings_and_values(self) -> None:
        assert call("concat", "st", "app", 1, True) == "stapp1True"

    def test_concat_arrays(self) -> None:
        assert call("concat", [1], [2, 3]) == [1, 2, 3]

    def test_format(self) -> None:
        assert call("format", "{0}-{1}", "app", 7) == "app-7"

    @pytest.mark.parametrize(
        ("template", "expected"),
        [
            ("{{0}}", "{0}"),
            ("{{{0}}}", "{x}"),
            ("a}}b{{", "a}b{"),
        ],
    )
    def test_format_escaped_braces(self, template: str, expected: str) -> None:
        assert call("format", template, "x") == expected

    def test_format_missing_argument(self) -> None:
        with pytest.raises(EvaluationError):
            call("format", "{0}-{1}", "app")

    def test_case_functions(self) -> None:
        assert call("tolower", "AbC") == "abc"
        assert call("toupper", "AbC") == "ABC"

    def test_substring(self) -> None:
        assert call("substring", "function", 0, 4) == "func"
        assert call("substring", "function", 4) == "tion"

    def test_substring_out_of_range(self) -> None:
        with pytest.raises(EvaluationError):
            call("substring", "abc", 1, 5)

    def test_take_and_skip(self) -> None:
        assert call("take", "abcdef", 3) == "abc"
        assert call("skip", [1, 2, 3], 1) == [2, 3]

    def test_replace_and_trim(self) -> None:
        assert call("replace", "a-b-c", "-", "") == "abc"
        assert call("trim", "  x  ") == "x"

    def test_starts_and_ends_with_ignore_case(self) -> None:
        assert call("startswith", "Microsoft.Web", "microsoft")
        assert call("endswith", "Microsoft.Web", "WEB")

    def test_string_requires_string_argument(self) -> None:
        with pytest.raises(EvaluationError):
            call("tolower", 3)


class TestCollectionFunctions:
    """Tests for array and object functions."""

    def test_length_and_empty(self) -> None:
        assert call("length", [1, 2]) == 2
        assert call("empty", "") is True
        assert call("empty", None) is True
        assert call("empty", {"a": 1}) is False

    def test_contains(self) -> None:
        assert call("contains", {"Key": 1}, "key")
        assert call("contains", [1, 2], 2)
        assert call("contains", "abc", "b")

    def test_create_object_and_union(self) -> None:
        assert call("createobject", "a", 1, "b", 2) == {"a": 1, "b": 2}
        assert call("union", {"a": 1}, {"b": 2}) == {"a": 1, "b": 2}
        assert call("union", [1, 2], [2, 3]) == [1, 2, 3]

    def test_create_object_odd_arguments(self) -> None:
        with pytest.raises(EvaluationError):
            call("createobject", "a")

    def test_union_mixed_types(self) -> None:
        with pytest.raises(EvaluationError):
            call("union", {"a": 1}, [1])


class TestConversionFunctions:
    """Tests for type conversion and logic."""

    def test_int_and_bool(self) -> None:
        assert call("int", "42") == 42
        assert call("bool", "True") is True
        assert call("bool", 0) is False

    def test_int_invalid(self) -> None:
        with pytest.raises(EvaluationError):
            call("int", "forty")

    def test_json(self) -> None:
        assert call("json", '{"a": [1]}') == {"a": [1]}

    def test_equals_and_not(self) -> None:
        assert call("equals", "a", "a") is True
        assert call("not", False) is True

    def test_not_requires_boolean(self) -> None:
        with pytest.raises(EvaluationError):
            call("not", "false")

    def test_argument_count_checked(self) -> None:
        with pytest.raises(EvaluationError) as exc_info:
            call("tolower", "a", "b")

        assert "expects 1 argument" in str(exc_info.value)


class TestNamingFunctions:
    """Tests for the hash-based naming functions."""

    def test_unique_string_and_guid_are_stable(self) -> None:
        assert call("uniquestring", "a", "b") == call("uniquestring", "a", "b")
        assert call("guid", "a") == call("guid", "a")

    def test_unique_name_fits_limit(self) -> None:
        name = call("uniquename", "stverylongfunctionappname", 24, "seed")

        assert isinstance(name, str)
        assert len(name) == 24

    def test_unique_name_limit_too_small(self) -> None:
        with pytest.raises(EvaluationError):
            call("uniquename", "st", 5, "seed")

    @pytest.mark.parametrize("name", ["uniquestring", "guid", "uniquename"])
    def test_unencodable_seed(self, name: str) -> None:
        args = ("st", 24, "\ud800") if name == "uniquename" else ("\ud800",)

        with pytest.raises(EvaluationError, match="not valid unicode"):
            call(name, *args)


class TestResourceId:
    """Tests for resourceId() argument handling."""

    def test_resource_group_scope(self) -> None:
        value = build_resource_id("resourceId", ("Microsoft.Web/sites", "app"), SUB, "rg")

        assert value == f"/subscriptions/{SUB}/resourceGroups/rg/providers/Microsoft.Web/sites/app"

    def test_child_resource(self) -> None:
        value = build_resource_id(
            "resourceId", ("Microsoft.Sql/servers/databases", "srv", "db"), SUB, "rg"
        )

        assert value.endswith("/providers/Microsoft.Sql/servers/srv/databases/db")

    def test_resource_group_override(self) -> None:
        value = build_resource_id("resourceId", ("other-rg", "Microsoft.Web/sites", "app"), SUB, "rg")

        assert "/resourceGroups/other-rg/" in value

    def test_subscription_scope(self) -> None:
        value = build_resource_id(
            "subscriptionResourceId",
            ("Microsoft.Authorization/roleDefinitions", "abc"),
            SUB,
            None,
        )

        assert value == f"/subscriptions/{SUB}/providers/Microsoft.Authorization/roleDefinitions/abc"

    def test_segment_mismatch(self) -> None:
        with pytest.raises(EvaluationError):
            build_resource_id("resourceId", ("Microsoft.Sql/servers/databases", "srv"), SUB, "rg")
