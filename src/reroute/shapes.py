"""Adapters for the entry encodings a rule source may use.

Shapes (pick one per fetcher, or let AutoEntryShape decide per entry):
- FlatEntryShape: ``{"from": ..., "to": ..., "type": ...}``
- EnvelopedEntryShape: ``{"attributes": {"from": ..., "to": ..., "type": ...}}``
- AutoEntryShape: enveloped if the entry carries an ``attributes`` object, flat otherwise

Every shape turns a raw entry into a RedirectRule or raises ValidationError.
"""

from typing import Any, Protocol

from reroute.errors import ValidationError
from reroute.rules import RedirectRule, RedirectType


class EntryShape(Protocol):
    """Protocol for entry adapters."""

    name: str

    def parse(self, entry: Any) -> RedirectRule:
        ...


def _rule_from_fields(fields: Any) -> RedirectRule:
    if not isinstance(fields, dict):
        raise ValidationError(f"entry is not an object: {type(fields).__name__}")
    source = fields.get("from")
    target = fields.get("to")
    if not isinstance(source, str) or not source:
        raise ValidationError("entry has no 'from'")
    if not isinstance(target, str) or not target:
        raise ValidationError("entry has no 'to'")
    return RedirectRule(source, target, RedirectType.parse(fields.get("type")))


class FlatEntryShape:
    __slots__ = ()

    name = "flat"

    def parse(self, entry: Any) -> RedirectRule:
        return _rule_from_fields(entry)


class EnvelopedEntryShape:
    __slots__ = ()

    name = "enveloped"

    def parse(self, entry: Any) -> RedirectRule:
        if not isinstance(entry, dict):
            raise ValidationError(f"entry is not an object: {type(entry).__name__}")
        attributes = entry.get("attributes")
        if attributes is None:
            raise ValidationError("entry has no 'attributes'")
        return _rule_from_fields(attributes)


class AutoEntryShape:
    """Detect the encoding per entry, so mixed collections still load."""

    __slots__ = ("_flat", "_enveloped")

    name = "auto"

    def __init__(self) -> None:
        self._flat = FlatEntryShape()
        self._enveloped = EnvelopedEntryShape()

    def parse(self, entry: Any) -> RedirectRule:
        if isinstance(entry, dict) and isinstance(entry.get("attributes"), dict):
            return self._enveloped.parse(entry)
        return self._flat.parse(entry)


SHAPE_BY_NAME = {
    "flat": FlatEntryShape,
    "enveloped": EnvelopedEntryShape,
    "auto": AutoEntryShape,
}


def shape_from_name(name: str) -> EntryShape:
    try:
        return SHAPE_BY_NAME[name.strip().lower()]()
    except KeyError:
        raise ValueError(f"Unknown entry shape: {name!r}") from None
