"""
Targeting conditions.

Conditions are MongoDB-style documents evaluated against a user's
attributes, e.g. ``{"country": {"$in": ["US", "CA"]}, "age": {"$gte": 18}}``.
Evaluation is a pure function of the condition, the attributes and the
saved groups, and never raises: anything that can't be compared simply
fails its predicate.
"""

import logging
import re

from typing import Any, Dict, List, Optional

logger = logging.getLogger("featurebook.conditions")

_VERSION_RE = re.compile(r"^v?\d+(\.\d+)+([-+][0-9A-Za-z.+-]*)?$")
_NUMERIC_PART_RE = re.compile(r"^[0-9]+$")


def padded_version_string(input) -> str:
    if type(input) is int or type(input) is float:
        input = str(input)
    if not input or not isinstance(input, str):
        input = "0"

    # "v1.2.3-rc.1+build123" -> ["1", "2", "3", "rc", "1"]
    parts = re.split(r"[-.]", re.sub(r"(^v|\+.*$)", "", input))

    # A release sorts after its pre-releases ("~" is the largest printable ASCII char)
    if len(parts) == 3:
        parts.append("~")

    # Left pad numeric parts so that " 9" < "10"
    return "-".join(p.rjust(5, " ") if _NUMERIC_PART_RE.match(p) else p for p in parts)


def looks_like_version(value) -> bool:
    return isinstance(value, str) and bool(_VERSION_RE.match(value))


def get_type(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple, set)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "unknown"


def get_path(attributes, path: str):
    current = attributes
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            return None
    return current


def is_operator_object(obj) -> bool:
    if not isinstance(obj, dict) or not obj:
        return False
    return all(isinstance(key, str) and key.startswith("$") for key in obj)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare(actual, expected) -> Optional[int]:
    """
    Three-way comparison used by the equality and ordering operators.

    Numbers compare numerically (a numeric string or null on the other side
    is coerced), two version-looking strings compare as versions, and
    anything else compares natively. Returns None when the operands can't
    be ordered.
    """
    if _is_number(actual) != _is_number(expected):
        try:
            if _is_number(actual):
                expected = 0 if expected is None else float(expected)
            else:
                actual = 0 if actual is None else float(actual)
        except (TypeError, ValueError):
            return None
    elif looks_like_version(actual) and looks_like_version(expected):
        actual = padded_version_string(actual)
        expected = padded_version_string(expected)

    try:
        if actual > expected:
            return 1
        if actual < expected:
            return -1
    except TypeError:
        return 0 if actual == expected else None
    return 0 if actual == expected else None


def _fold(value):
    return value.lower() if isinstance(value, str) else value


def is_in(actual, expected: list, insensitive: bool = False) -> bool:
    if insensitive:
        expected = [_fold(v) for v in expected]
    if isinstance(actual, (list, tuple, set)):
        return any((_fold(v) if insensitive else v) in expected for v in actual)
    return (_fold(actual) if insensitive else actual) in expected


def _matches_all(actual, expected: list, saved_groups: dict, insensitive: bool = False) -> bool:
    if not isinstance(actual, (list, tuple)) or not isinstance(expected, list):
        return False
    for cond in expected:
        if insensitive:
            found = any(_fold(item) == _fold(cond) for item in actual)
        else:
            found = any(eval_condition_value(cond, item, saved_groups) for item in actual)
        if not found:
            return False
    return True


def _regex_search(pattern, actual, flags: int = 0) -> Optional[bool]:
    if _is_number(actual):
        actual = str(actual)
    if not isinstance(actual, str) or not isinstance(pattern, str):
        return None
    try:
        return bool(re.search(pattern, actual, flags))
    except re.error:
        logger.warning("Invalid regex in condition: %s", pattern)
        return None


def elem_match(actual, condition, saved_groups: dict) -> bool:
    if not isinstance(actual, (list, tuple)):
        return False
    for item in actual:
        if is_operator_object(condition):
            if eval_condition_value(condition, item, saved_groups):
                return True
        elif isinstance(condition, dict) and _eval_document(item, condition, saved_groups):
            return True
    return False


def eval_operator(operator: str, actual, expected, saved_groups: dict) -> bool:
    if operator in ("$eq", "$ne", "$lt", "$lte", "$gt", "$gte"):
        cmp = compare(actual, expected)
        if cmp is None:
            return operator == "$ne" and actual != expected
        if operator == "$eq":
            return cmp == 0
        if operator == "$ne":
            return cmp != 0
        if operator == "$lt":
            return cmp < 0
        if operator == "$lte":
            return cmp <= 0
        if operator == "$gt":
            return cmp > 0
        return cmp >= 0

    if operator in ("$veq", "$vne", "$vlt", "$vlte", "$vgt", "$vgte"):
        a = padded_version_string(actual)
        e = padded_version_string(expected)
        return {
            "$veq": a == e,
            "$vne": a != e,
            "$vlt": a < e,
            "$vlte": a <= e,
            "$vgt": a > e,
            "$vgte": a >= e,
        }[operator]

    if operator in ("$in", "$nin", "$ini", "$nini"):
        if not isinstance(expected, list):
            return False
        found = is_in(actual, expected, insensitive=operator.endswith("i"))
        return found if operator in ("$in", "$ini") else not found

    if operator in ("$inGroup", "$notInGroup"):
        if not isinstance(expected, str):
            return False
        members = (saved_groups or {}).get(expected) or []
        if not isinstance(members, list):
            return False
        found = is_in(actual, members)
        return found if operator == "$inGroup" else not found

    if operator == "$all":
        return _matches_all(actual, expected, saved_groups)
    if operator == "$alli":
        return _matches_all(actual, expected, saved_groups, insensitive=True)
    if operator == "$elemMatch":
        return elem_match(actual, expected, saved_groups)
    if operator == "$size":
        if not isinstance(actual, (list, tuple)):
            return False
        return eval_condition_value(expected, len(actual), saved_groups)
    if operator == "$exists":
        return actual is not None if expected else actual is None
    if operator == "$type":
        return get_type(actual) == expected
    if operator == "$not":
        return not eval_condition_value(expected, actual, saved_groups)

    if operator in ("$regex", "$regexi", "$notRegex", "$notRegexi"):
        flags = re.IGNORECASE if operator.endswith("i") else 0
        matched = _regex_search(expected, actual, flags)
        if matched is None:
            return False
        return matched if operator.startswith("$regex") else not matched

    logger.warning("Unknown operator: %s", operator)
    return False


def eval_condition_value(condition, actual, saved_groups: dict) -> bool:
    if is_operator_object(condition):
        return all(
            eval_operator(op, actual, expected, saved_groups)
            for op, expected in condition.items()
        )
    return condition == actual


def _eval_any(attributes, conditions, saved_groups: dict) -> bool:
    if not isinstance(conditions, list):
        return False
    if not conditions:
        return True
    return any(_eval_document(attributes, c, saved_groups) for c in conditions)


def _eval_every(attributes, conditions, saved_groups: dict) -> bool:
    if not isinstance(conditions, list):
        return False
    return all(_eval_document(attributes, c, saved_groups) for c in conditions)


def _eval_document(attributes, condition, saved_groups: dict) -> bool:
    if not isinstance(condition, dict):
        return False

    for key, value in condition.items():
        if key == "$or":
            passed = _eval_any(attributes, value, saved_groups)
        elif key == "$nor":
            passed = isinstance(value, list) and not _eval_any(attributes, value, saved_groups)
        elif key == "$and":
            passed = _eval_every(attributes, value, saved_groups)
        elif key == "$not":
            passed = isinstance(value, dict) and not _eval_document(attributes, value, saved_groups)
        else:
            passed = eval_condition_value(value, get_path(attributes, key), saved_groups)
        if not passed:
            return False
    return True


def eval_condition(
    attributes: Dict[str, Any], condition: Dict[str, Any], saved_groups: Dict[str, List] = None
) -> bool:
    """
    Returns True when ``attributes`` satisfy ``condition``.

    ``saved_groups`` maps a group id to its member values and backs the
    ``$inGroup`` / ``$notInGroup`` operators. A malformed condition
    evaluates to False.
    """
    try:
        return _eval_document(attributes or {}, condition, saved_groups or {})
    except (TypeError, ValueError, AttributeError, RecursionError) as e:
        logger.warning("Failed to evaluate condition %s: %s", condition, e)
        return False
