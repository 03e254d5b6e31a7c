from __future__ import annotations
import math
import re

_numeric_part_re = re.compile(r"^\d+$")
_lexicographical_part_re = re.compile(r"^\d+[A-Za-z]*$")

# Removes anything that is not a digit, a dot or a dash, and everything after
# the first dash. e.g. v1.2.3a-b6 becomes 1.2.3
_non_version_chars_re = re.compile(r"[^\d.\-]")
_prerelease_suffix_re = re.compile(r"-.*")


def _has_valid_parts(lexicographical: bool, parts: list[str]) -> bool:
    regex = _lexicographical_part_re if lexicographical else _numeric_part_re
    return len(parts) > 0 and all(regex.match(p) for p in parts)


def version_compare(v1: str, v2: str, lexicographical: bool = False, zero_extend: bool = False) -> float:
    """
    Compare two dotted version strings. Returns 1 if v1 > v2, -1 if v1 < v2,
    0 if they are equal and NaN if either version is not a valid version.
    """
    v1_parts = v1.split(".")
    v2_parts = v2.split(".")
    if not _has_valid_parts(lexicographical, v1_parts) or not _has_valid_parts(lexicographical, v2_parts):
        return math.nan

    if zero_extend:
        while len(v1_parts) < len(v2_parts):
            v1_parts.append("0")
        while len(v2_parts) < len(v1_parts):
            v2_parts.append("0")

    if lexicographical:
        left: list = v1_parts
        right: list = v2_parts
    else:
        left = [float(p) for p in v1_parts]
        right = [float(p) for p in v2_parts]

    for i, p in enumerate(left):
        if len(right) == i:
            return 1
        if p == right[i]:
            continue
        return 1 if p > right[i] else -1

    if len(left) != len(right):
        return -1
    return 0


def convert_to_semantic_version(version: str) -> str:
    """
    Pad the version to at least three components and replace empty components
    with zero. e.g. 1 becomes 1.0.0 and 1..3 becomes 1.0.3
    """
    parts = version.split(".")
    while len(parts) < 3:
        parts.append("0")
    return ".".join(p if p else "0" for p in parts)


def _strip_version(version: str) -> str:
    return _prerelease_suffix_re.sub("", _non_version_chars_re.sub("", version))


def check_version_value(filter_version: str, version: str, comparator: str) -> bool:
    if not version or not filter_version:
        return False
    result = version_compare(version, filter_version, zero_extend=True)
    if math.isnan(result):
        return False
    if result == 0:
        return "=" in comparator
    if result == 1:
        return ">" in comparator
    return "<" in comparator


def check_version_filter(version: str, filter_versions: list[str] | tuple[str, ...], comparator: str) -> bool:
    """
    Check an observed version against filter versions for the given
    comparator. Equality also holds for identical raw strings so versions
    that are not dotted numbers can still be matched exactly.
    """
    if not version:
        return False

    negate = comparator == "!="
    if negate:
        comparator = "="

    if comparator == "=":
        semver = convert_to_semantic_version(version)
        passed = any(version == fv or check_version_value(fv, semver, comparator) for fv in filter_versions)
    else:
        semver = convert_to_semantic_version(_strip_version(version))
        passed = any(check_version_value(_strip_version(fv), semver, comparator) for fv in filter_versions)

    return not passed if negate else passed
