"""Pure built-in template functions.

Every function here is deterministic and side-effect free: its result
depends only on its (already evaluated) arguments. Functions that need the
evaluation scope (parameters, variables, reference, resourceGroup, ...) and
the short-circuiting forms (if, and, or, coalesce) live in evaluator.py.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

from . import naming
from .errors import EvaluationError
from .identifiers import format_resource_id

_FORMAT_TOKEN = re.compile(r"\{\{|\}\}|\{(\d+)(?::[^}]*)?\}")


def _require_args(name: str, args: tuple[Any, ...], minimum: int, maximum: int | None = None) -> None:
    if len(args) < minimum or (maximum is not None and len(args) > maximum):
        expected = str(minimum) if maximum == minimum else f"{minimum}..{maximum if maximum is not None else 'n'}"
        raise EvaluationError(f"{name}() expects {expected} argument(s), got {len(args)}")


def _require_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise EvaluationError(f"{name}() expects a string, got {type(value).__name__}")
    return value


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EvaluationError(f"{name}() expects an integer, got {type(value).__name__}")
    return value


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    if value is None:
        return ""
    return str(value)


def fn_concat(*args: Any) -> Any:
    if args and all(isinstance(a, list) for a in args):
        result: list[Any] = []
        for a in args:
            result.extend(a)
        return result
    return "".join(_to_text(a) for a in args)


def fn_format(*args: Any) -> str:
    _require_args("format", args, 1)
    template = _require_str("format", args[0])
    values = args[1:]

    def substitute(match: re.Match[str]) -> str:
        if match.group(1) is None:
            # Escaped brace
            return match.group(0)[0]
        index = int(match.group(1))
        if index >= len(values):
            raise EvaluationError(f"format() placeholder {{{index}}} has no argument")
        return _to_text(values[index])

    return _FORMAT_TOKEN.sub(substitute, template)


def fn_tolower(*args: Any) -> str:
    _require_args("toLower", args, 1, 1)
    return _require_str("toLower", args[0]).lower()


def fn_toupper(*args: Any) -> str:
    _require_args("toUpper", args, 1, 1)
    return _require_str("toUpper", args[0]).upper()


def fn_substring(*args: Any) -> str:
    _require_args("substring", args, 2, 3)
    text = _require_str("substring", args[0])
    start = _require_int("substring", args[1])
    if start < 0 or start > len(text):
        raise EvaluationError(f"substring() start index {start} is out of range for length {len(text)}")
    if len(args) == 2:
        return text[start:]
    length = _require_int("substring", args[2])
    if length < 0 or start + length > len(text):
        raise EvaluationError(
            f"substring() length {length} from {start} exceeds string length {len(text)}"
        )
    return text[start : start + length]


def fn_take(*args: Any) -> Any:
    _require_args("take", args, 2, 2)
    count = max(_require_int("take", args[1]), 0)
    if isinstance(args[0], str | list):
        return args[0][:count]
    raise EvaluationError("take() expects a string or array")


def fn_skip(*args: Any) -> Any:
    _require_args("skip", args, 2, 2)
    count = max(_require_int("skip", args[1]), 0)
    if isinstance(args[0], str | list):
        return args[0][count:]
    raise EvaluationError("skip() expects a string or array")


def fn_replace(*args: Any) -> str:
    _require_args("replace", args, 3, 3)
    return _require_str("replace", args[0]).replace(
        _require_str("replace", args[1]), _require_str("replace", args[2])
    )


def fn_trim(*args: Any) -> str:
    _require_args("trim", args, 1, 1)
    return _require_str("trim", args[0]).strip()


def fn_length(*args: Any) -> int:
    _require_args("length", args, 1, 1)
    if isinstance(args[0], str | list | dict):
        return len(args[0])
    raise EvaluationError("length() expects a string, array or object")


def fn_empty(*args: Any) -> bool:
    _require_args("empty", args, 1, 1)
    value = args[0]
    return value is None or (isinstance(value, str | list | dict) and len(value) == 0)


def fn_contains(*args: Any) -> bool:
    _require_args("contains", args, 2, 2)
    container, item = args
    if isinstance(container, dict):
        return str(item).lower() in (k.lower() for k in container)
    if isinstance(container, str):
        return _to_text(item) in container
    if isinstance(container, list):
        return item in container
    raise EvaluationError("contains() expects a string, array or object")


def fn_startswith(*args: Any) -> bool:
    _require_args("startsWith", args, 2, 2)
    return _require_str("startsWith", args[0]).lower().startswith(
        _require_str("startsWith", args[1]).lower()
    )


def fn_endswith(*args: Any) -> bool:
    _require_args("endsWith", args, 2, 2)
    return _require_str("endsWith", args[0]).lower().endswith(
        _require_str("endsWith", args[1]).lower()
    )


def fn_string(*args: Any) -> str:
    _require_args("string", args, 1, 1)
    return _to_text(args[0])


def fn_int(*args: Any) -> int:
    _require_args("int", args, 1, 1)
    try:
        return int(args[0])
    except (TypeError, ValueError) as e:
        raise EvaluationError(f"int() cannot convert {args[0]!r}") from e


def fn_bool(*args: Any) -> bool:
    _require_args("bool", args, 1, 1)
    value = args[0]
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    if isinstance(value, int):
        return value != 0
    raise EvaluationError(f"bool() cannot convert {value!r}")


def fn_json(*args: Any) -> Any:
    _require_args("json", args, 1, 1)
    try:
        return json.loads(_require_str("json", args[0]))
    except json.JSONDecodeError as e:
        raise EvaluationError(f"json() received invalid JSON: {e}") from e


def fn_equals(*args: Any) -> bool:
    _require_args("equals", args, 2, 2)
    return args[0] == args[1]


def fn_not(*args: Any) -> bool:
    _require_args("not", args, 1, 1)
    if not isinstance(args[0], bool):
        raise EvaluationError(f"not() expects a boolean, got {type(args[0]).__name__}")
    return not args[0]


def fn_createarray(*args: Any) -> list[Any]:
    return list(args)


def fn_createobject(*args: Any) -> dict[str, Any]:
    if len(args) % 2 != 0:
        raise EvaluationError("createObject() expects key/value pairs")
    return {_require_str("createObject", args[i]): args[i + 1] for i in range(0, len(args), 2)}


def fn_union(*args: Any) -> Any:
    _require_args("union", args, 1)
    if all(isinstance(a, dict) for a in args):
        merged: dict[str, Any] = {}
        for a in args:
            merged.update(a)
        return merged
    if all(isinstance(a, list) for a in args):
        result: list[Any] = []
        for a in args:
            result.extend(item for item in a if item not in result)
        return result
    raise EvaluationError("union() expects all objects or all arrays")


def fn_uniquestring(*args: Any) -> str:
    _require_args("uniqueString", args, 1)
    seeds = [_require_str("uniqueString", a) for a in args]
    try:
        return naming.unique_string(*seeds)
    except ValueError as e:
        raise EvaluationError(str(e)) from e


def fn_uniquename(*args: Any) -> str:
    """uniqueName(base, maxLength, seed, ...): truncate the base, then append the hash."""
    _require_args("uniqueName", args, 3)
    base = _require_str("uniqueName", args[0])
    max_length = _require_int("uniqueName", args[1])
    seeds = [_require_str("uniqueName", a) for a in args[2:]]
    try:
        return naming.unique_name(base, max_length, *seeds)
    except ValueError as e:
        raise EvaluationError(str(e)) from e


def fn_guid(*args: Any) -> str:
    _require_args("guid", args, 1)
    seeds = [_require_str("guid", a) for a in args]
    try:
        return naming.deterministic_guid(*seeds)
    except ValueError as e:
        raise EvaluationError(str(e)) from e


def fn_true(*args: Any) -> bool:
    _require_args("true", args, 0, 0)
    return True


def fn_false(*args: Any) -> bool:
    _require_args("false", args, 0, 0)
    return False


def fn_null(*args: Any) -> None:
    _require_args("null", args, 0, 0)
    return None


def build_resource_id(
    name: str,
    args: tuple[Any, ...],
    default_subscription: str,
    default_resource_group: str | None,
) -> str:
    """Implement resourceId()/subscriptionResourceId() argument handling.

    Leading arguments before the type (the first argument containing a
    slash) override subscription and, for resourceId(), resource group.
    """
    _require_args(name, args, 2)
    texts = [_require_str(name, a) for a in args]
    type_index = next((i for i, t in enumerate(texts) if "/" in t), None)
    if type_index is None:
        raise EvaluationError(f"{name}() needs a resource type argument like 'Namespace/type'")

    leading = texts[:type_index]
    subscription = default_subscription
    resource_group = default_resource_group
    if default_resource_group is None:
        if len(leading) > 1:
            raise EvaluationError(f"{name}() accepts at most a subscription before the type")
        if leading:
            subscription = leading[0]
    else:
        if len(leading) > 2:
            raise EvaluationError(f"{name}() accepts subscription and resource group before the type")
        if len(leading) == 1:
            resource_group = leading[0]
        elif len(leading) == 2:
            subscription, resource_group = leading

    names = texts[type_index + 1 :]
    if not names:
        raise EvaluationError(f"{name}() needs at least one resource name")
    try:
        return format_resource_id(subscription, resource_group, texts[type_index], "/".join(names))
    except ValueError as e:
        raise EvaluationError(str(e)) from e


PURE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "concat": fn_concat,
    "format": fn_format,
    "tolower": fn_tolower,
    "toupper": fn_toupper,
    "substring": fn_substring,
    "take": fn_take,
    "skip": fn_skip,
    "replace": fn_replace,
    "trim": fn_trim,
    "length": fn_length,
    "empty": fn_empty,
    "contains": fn_contains,
    "startswith": fn_startswith,
    "endswith": fn_endswith,
    "string": fn_string,
    "int": fn_int,
    "bool": fn_bool,
    "json": fn_json,
    "equals": fn_equals,
    "not": fn_not,
    "createarray": fn_createarray,
    "createobject": fn_createobject,
    "union": fn_union,
    "uniquestring": fn_uniquestring,
    "uniquename": fn_uniquename,
    "guid": fn_guid,
    "true": fn_true,
    "false": fn_false,
    "null": fn_null,
}
