"""
Audience filter trees.

An audience is a tree of operators (and/or) whose leaves are filters. Filters
are decoded from the config document in two passes: the discriminating
fields (operator, type, subType) are looked at first and the raw object is
then decoded into the matching filter class. Filter values are compiled into
typed tuples once at decode time so evaluation never has to check types of
the configured values.
"""

from __future__ import annotations
import logging
import math
from collections.abc import Mapping
from typing import Any, Literal, TypeAlias

from .user import CustomData, PopulatedUser
from .versions import check_version_filter


logger = logging.getLogger(__name__)

# Audience match filters may reference audiences that reference other
# audiences. Evaluation deeper than this is treated as not matching.
MAX_AUDIENCE_DEPTH = 32

Audiences: TypeAlias = Mapping[str, "AudienceOperator"]
FilterValue: TypeAlias = str | bool | int | float

OPERATOR_AND = "and"
OPERATOR_OR = "or"

TYPE_ALL = "all"
TYPE_USER = "user"
TYPE_OPT_IN = "optIn"
TYPE_AUDIENCE_MATCH = "audienceMatch"

SUB_TYPE_USER_ID = "user_id"
SUB_TYPE_EMAIL = "email"
SUB_TYPE_IP = "ip"
SUB_TYPE_COUNTRY = "country"
SUB_TYPE_PLATFORM = "platform"
SUB_TYPE_PLATFORM_VERSION = "platformVersion"
SUB_TYPE_APP_VERSION = "appVersion"
SUB_TYPE_DEVICE_MODEL = "deviceModel"
SUB_TYPE_CUSTOM_DATA = "customData"

DATA_KEY_TYPE_STRING = "String"
DATA_KEY_TYPE_BOOLEAN = "Boolean"
DATA_KEY_TYPE_NUMBER = "Number"


class FilterError(ValueError):
    pass


class Filter:
    """
    Base of all nodes in an audience tree.
    """

    __slots__ = ()

    def evaluate(self, audiences: Audiences, user: PopulatedUser, client_custom_data: CustomData | None, depth: int = 0) -> bool:
        raise NotImplementedError  # pragma: no cover


class AllFilter(Filter):
    __slots__ = ()

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        return True


class OptInFilter(Filter):
    """
    Opt-in requires server side state so it never passes locally.
    """

    __slots__ = ()

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        return False


class UnknownFilter(Filter):
    """
    Placeholder for filter types this version does not understand. It never
    passes.
    """

    __slots__ = ("type",)
    type: str

    def __init__(self, type: str):
        self.type = type

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        return False


def _compile_values(values: list[Any]) -> tuple[tuple[str, ...], tuple[bool, ...], tuple[float, ...]]:
    """
    Split the raw JSON values of a filter into typed tuples. All values must
    be of the type of the first value.
    """
    if not values:
        return (), (), ()
    first = values[0]
    if isinstance(first, bool):
        if not all(isinstance(v, bool) for v in values):
            raise FilterError(f"filter values must all be of the same type, expected bool: {values!r}")
        return (), tuple(values), ()
    if isinstance(first, str):
        if not all(isinstance(v, str) for v in values):
            raise FilterError(f"filter values must all be of the same type, expected string: {values!r}")
        return tuple(values), (), ()
    if isinstance(first, (int, float)):
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            raise FilterError(f"filter values must all be of the same type, expected number: {values!r}")
        return (), (), tuple(float(v) for v in values)
    raise FilterError(f"filter values must be of type bool, string or number, got {type(first).__name__}")


class UserFilter(Filter):
    __slots__ = ("type", "sub_type", "comparator", "values", "string_values", "bool_values", "number_values")
    type: str
    sub_type: str
    comparator: str
    values: list[FilterValue]
    string_values: tuple[str, ...]
    bool_values: tuple[bool, ...]
    number_values: tuple[float, ...]

    def __init__(self, sub_type: str, comparator: str, values: list[FilterValue] | None = None):
        self.type = TYPE_USER
        self.sub_type = sub_type
        self.comparator = comparator
        self.values = list(values or [])
        self.string_values, self.bool_values, self.number_values = _compile_values(self.values)

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        match self.sub_type:
            case "country":
                return check_strings_filter(user.country, self.string_values, self.comparator)
            case "email":
                return check_strings_filter(user.email, self.string_values, self.comparator)
            case "user_id":
                return check_strings_filter(user.user_id, self.string_values, self.comparator)
            case "appVersion":
                return check_version_filter(user.app_version, self.string_values, self.comparator)
            case "platformVersion":
                return check_version_filter(user.platform_version, self.string_values, self.comparator)
            case "deviceModel":
                return check_strings_filter(user.device_model, self.string_values, self.comparator)
            case "platform":
                return check_strings_filter(user.platform, self.string_values, self.comparator)
            case _:
                return False


class CustomDataFilter(UserFilter):
    __slots__ = ("data_key", "data_key_type")
    data_key: str
    data_key_type: str

    def __init__(self, comparator: str, data_key: str, data_key_type: str, values: list[FilterValue] | None = None):
        super().__init__(SUB_TYPE_CUSTOM_DATA, comparator, values)
        self.data_key = data_key
        self.data_key_type = data_key_type

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        return check_custom_data(self, user.combined_custom_data(), client_custom_data)


class AudienceMatchFilter(Filter):
    __slots__ = ("comparator", "audiences")
    comparator: Literal["=", "!="]
    audiences: list[str]

    def __init__(self, comparator: str, audiences: list[str]):
        if comparator not in ("=", "!="):
            raise FilterError(f"audience match comparator must be '=' or '!=', not {comparator!r}")
        self.comparator = comparator
        self.audiences = list(audiences)

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        if depth >= MAX_AUDIENCE_DEPTH:
            logger.warning("Audience references nested deeper than %d levels, treating as not matching", MAX_AUDIENCE_DEPTH)
            return False
        for audience_id in self.audiences:
            audience = audiences.get(audience_id)
            if audience is None:
                return False
            if audience.evaluate(audiences, user, client_custom_data, depth + 1):
                return self.comparator == "="
        return self.comparator == "!="


class AudienceOperator(Filter):
    __slots__ = ("operator", "filters")
    operator: str
    filters: list[Filter]

    def __init__(self, operator: str, filters: list[Filter] | None = None):
        self.operator = operator
        self.filters = list(filters or [])

    def evaluate(self, audiences, user, client_custom_data, depth=0):
        if not self.filters:
            return False
        if self.operator == OPERATOR_OR:
            return any(f.evaluate(audiences, user, client_custom_data, depth) for f in self.filters)
        if self.operator == OPERATOR_AND:
            return all(f.evaluate(audiences, user, client_custom_data, depth) for f in self.filters)
        return False


def parse_filter(raw: dict[str, Any]) -> Filter:
    """
    Decode a filter or operator from its JSON object.
    """
    if not isinstance(raw, dict):
        raise FilterError(f"filter must be an object, not {type(raw).__name__}")

    # First pass: peek at the discriminating fields only.
    operator = raw.get("operator") or ""
    filter_type = raw.get("type") or ""
    sub_type = raw.get("subType") or ""
    comparator = raw.get("comparator") or ""

    # Second pass: decode the full object into the matching variant.
    if operator:
        return parse_operator(raw)
    match filter_type:
        case "all":
            return AllFilter()
        case "optIn":
            return OptInFilter()
        case "user" if sub_type == SUB_TYPE_CUSTOM_DATA:
            return CustomDataFilter(
                comparator,
                data_key=raw.get("dataKey") or "",
                data_key_type=raw.get("dataKeyType") or "",
                values=raw.get("values"),
            )
        case "user":
            return UserFilter(sub_type, comparator, raw.get("values"))
        case "audienceMatch":
            return AudienceMatchFilter(comparator, raw.get("_audiences") or [])
        case _:
            logger.warning("Invalid filter type %r. To leverage this new filter definition, please update to the latest version of the SDK.", filter_type)
            return UnknownFilter(filter_type)


def parse_operator(raw: dict[str, Any]) -> AudienceOperator:
    filters = raw.get("filters") or []
    if not isinstance(filters, list):
        raise FilterError("operator filters must be a list")
    return AudienceOperator(raw.get("operator") or "", [parse_filter(f) for f in filters])


# Comparison helpers.


def _any_contains(substrings: tuple[str, ...], s: str) -> bool:
    return any(sub and sub in s for sub in substrings)


def _any_prefix(prefixes: tuple[str, ...], s: str) -> bool:
    return any(p and s.startswith(p) for p in prefixes)


def _any_suffix(suffixes: tuple[str, ...], s: str) -> bool:
    return any(p and s.endswith(p) for p in suffixes)


def check_strings_filter(s: str | None, values: tuple[str, ...], comparator: str) -> bool:
    """
    Compare an observed string against filter values. An empty observed value
    is treated as non existent.
    """
    s = s or ""
    match comparator:
        case "=":
            return s != "" and s in values
        case "!=":
            return s != "" and s not in values
        case "exist":
            return s != ""
        case "!exist":
            return s == ""
        case "contain":
            return s != "" and _any_contains(values, s)
        case "!contain":
            return s == "" or not _any_contains(values, s)
        case "startWith":
            return s != "" and _any_prefix(values, s)
        case "!startWith":
            return s == "" or not _any_prefix(values, s)
        case "endWith":
            return s != "" and _any_suffix(values, s)
        case "!endWith":
            return s == "" or not _any_suffix(values, s)
        case _:
            return False


def check_number_filter(num: float, values: tuple[float, ...], comparator: str) -> bool:
    if comparator == "exist":
        return not math.isnan(num)
    if comparator == "!exist":
        return math.isnan(num)
    if math.isnan(num):
        return False

    if comparator == "!=":
        # A NaN filter value never passes.
        return all(not math.isnan(v) and num != v for v in values)

    for v in values:
        if math.isnan(v):
            continue
        match comparator:
            case "=":
                passed = num == v
            case ">":
                passed = num > v
            case ">=":
                passed = num >= v
            case "<":
                passed = num < v
            case "<=":
                passed = num <= v
            case _:
                continue
        if passed:
            return True
    return False


def check_boolean_filter(b: bool, values: tuple[bool, ...], comparator: str) -> bool:
    match comparator:
        case "contain" | "=":
            return b in values
        case "!contain" | "!=":
            return b not in values
        case "exist":
            return True
        case _:
            return False


def check_value_exists(value: Any) -> bool:
    """
    Whether a value of unknown type exists. None, empty strings and NaN are
    treated as non existent and so is any non scalar value.
    """
    if isinstance(value, str):
        return value != ""
    if isinstance(value, float):
        return not math.isnan(value)
    return isinstance(value, (bool, int))


def check_custom_data(f: CustomDataFilter, data: CustomData | None, client_custom_data: CustomData | None) -> bool:
    """
    Evaluate a custom data filter. The key is looked up in the user's data
    first and falls back to the client wide custom data.
    """
    data = data or {}
    client_custom_data = client_custom_data or {}
    if f.data_key in data:
        value = data[f.data_key]
    else:
        value = client_custom_data.get(f.data_key)

    comparator = f.comparator
    if comparator == "exist":
        return check_value_exists(value)
    if comparator == "!exist":
        return not check_value_exists(value)
    if isinstance(value, str) and f.data_key_type == DATA_KEY_TYPE_STRING:
        return check_strings_filter(value, f.string_values, comparator)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and f.data_key_type == DATA_KEY_TYPE_NUMBER:
        return check_number_filter(float(value), f.number_values, comparator)
    if isinstance(value, bool) and f.data_key_type == DATA_KEY_TYPE_BOOLEAN:
        return check_boolean_filter(value, f.bool_values, comparator)
    if value is None and comparator == "!=":
        return True
    return False
