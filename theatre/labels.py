"""Label sets, label validation and equality-based label selectors."""

from __future__ import annotations

import re
from typing import Mapping, Optional, Union

_NAME_MAX_LENGTH = 63
_PREFIX_MAX_LENGTH = 253
_NAME_RE = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")
_DNS_SUBDOMAIN_RE = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*")


class InvalidLabelError(ValueError):
    """A label key, label value or selector is malformed."""


def merge(*args: Optional[Mapping[str, str]]) -> dict[str, str]:
    """Merge label sets into a new dict; later sets win on conflicting keys."""
    result: dict[str, str] = {}
    for labels in args:
        result.update(labels or {})
    return result


def _validate_key(key: str) -> None:
    parts = key.split("/")
    if len(parts) == 1:
        name = parts[0]
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            raise InvalidLabelError(f"invalid label key {key!r}: prefix part must be non-empty")
        if len(prefix) > _PREFIX_MAX_LENGTH:
            raise InvalidLabelError(
                f"invalid label key {key!r}: prefix part must be no more than "
                f"{_PREFIX_MAX_LENGTH} characters"
            )
        if not _DNS_SUBDOMAIN_RE.fullmatch(prefix):
            raise InvalidLabelError(
                f"invalid label key {key!r}: prefix part must be a lowercase DNS subdomain"
            )
    else:
        raise InvalidLabelError(
            f"invalid label key {key!r}: a qualified name must have at most one '/'"
        )

    if not name:
        raise InvalidLabelError(f"invalid label key {key!r}: name part must be non-empty")
    if len(name) > _NAME_MAX_LENGTH:
        raise InvalidLabelError(
            f"invalid label key {key!r}: name part must be no more than "
            f"{_NAME_MAX_LENGTH} characters"
        )
    if not _NAME_RE.fullmatch(name):
        raise InvalidLabelError(
            f"invalid label key {key!r}: name part must consist of alphanumeric characters, "
            "'-', '_' or '.', and must start and end with an alphanumeric character"
        )


def _validate_value(key: str, value: str) -> None:
    if not value:
        return
    if len(value) > _NAME_MAX_LENGTH:
        raise InvalidLabelError(
            f"invalid label value {value!r} for key {key!r}: must be no more than "
            f"{_NAME_MAX_LENGTH} characters"
        )
    if not _NAME_RE.fullmatch(value):
        raise InvalidLabelError(
            f"invalid label value {value!r} for key {key!r}: must consist of alphanumeric "
            "characters, '-', '_' or '.', and must start and end with an alphanumeric character"
        )


def validate_labels(labels: Mapping[str, str]) -> dict[str, str]:
    """Check every key and value; return a copy of the labels if all are valid."""
    for key in sorted(labels):
        _validate_key(key)
        _validate_value(key, labels[key])
    return dict(labels)


def parse_selector(selector: str) -> dict[str, str]:
    """Parse a selector of comma separated ``key=value`` terms into a label set."""
    result: dict[str, str] = {}
    if not selector:
        return result
    for term in selector.split(","):
        pieces = term.split("=")
        if len(pieces) != 2:
            raise InvalidLabelError(f"invalid selector: {term!r}")
        key = pieces[0].strip()
        _validate_key(key)
        value = pieces[1].strip()
        _validate_value(key, value)
        result[key] = value
    return result


def matches(selector: Union[str, Mapping[str, str]], labels: Mapping[str, str]) -> bool:
    """True if every key of the selector is present in ``labels`` with the same value."""
    if isinstance(selector, str):
        selector = parse_selector(selector)
    return all(key in labels and labels[key] == value for key, value in selector.items())