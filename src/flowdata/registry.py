"""Ordered, duplicate-free registries of gate names and data-type labels."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Sequence, Type

from flowdata.exceptions import (
    InvalidMethodError,
    UnknownDataTypeError,
    UnknownGateError,
    UnknownReferenceError,
    ValidationError,
)
from flowdata.model import CrossedGate, GatePolygon

logger = logging.getLogger(__name__)

CROSS_MODES = ("and", "or")


def _as_name_list(names: str | Iterable[str], what: str) -> List[str]:
    if isinstance(names, str):
        names = [names]
    names = list(names)
    for name in names:
        if not isinstance(name, str) or not name:
            raise ValidationError(f"{what} names must be non-empty strings, got {name!r}")
    return names


class NameRegistry:
    """An append-only list of names where adding a known name is a no-op."""

    kind = "name"
    error: Type[UnknownReferenceError] = UnknownReferenceError

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: List[str] = []
        self.add(names, quiet=True)

    def add(self, names: str | Iterable[str], quiet: bool = False) -> List[str]:
        """Append the names that are not registered yet and return them."""
        added = []
        for name in _as_name_list(names, self.kind):
            if name not in self._names:
                self._names.append(name)
                added.append(name)
        if added and not quiet:
            logger.info("Added %s: %s", self.kind, ", ".join(added))
        return added

    def missing(self, names: Iterable[str]) -> List[str]:
        return [name for name in names if name not in self._names]

    def require(self, names: str | Iterable[str]) -> None:
        """Raise the registry's unknown-reference error for unregistered names."""
        if isinstance(names, str):
            names = [names]
        missing = self.missing(names)
        if missing:
            raise self.error(missing)

    @property
    def names(self) -> tuple:
        return tuple(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._names))

    def __len__(self) -> int:
        return len(self._names)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._names!r})"


class DataTypeRegistry(NameRegistry):
    kind = "data type"
    error = UnknownDataTypeError


class GateRegistry(NameRegistry):
    """Gate names plus what defines them: a drawn polygon or a crossing rule."""

    kind = "gate"
    error = UnknownGateError

    def __init__(self, names: Iterable[str] = ()) -> None:
        super().__init__(names)
        self._polygons: Dict[str, GatePolygon] = {}
        self._rules: Dict[str, CrossedGate] = {}

    @property
    def polygons(self) -> Dict[str, GatePolygon]:
        return dict(self._polygons)

    @property
    def rules(self) -> Dict[str, CrossedGate]:
        return dict(self._rules)

    def add_polygons(self, polygons: Sequence[GatePolygon]) -> List[str]:
        for polygon in polygons:
            self._polygons[polygon.name] = polygon
            self._rules.pop(polygon.name, None)
        return self.add([p.name for p in polygons])

    def plan_cross(self, mode: str, names: Sequence[str]) -> CrossedGate:
        """Validate a crossing request and describe the gate it would create."""
        if mode not in CROSS_MODES:
            raise InvalidMethodError(f"Gate crossing mode must be one of {CROSS_MODES}, got {mode!r}")
        names = _as_name_list(names, self.kind)
        if len(names) < 2:
            raise ValidationError("At least two gates are needed for crossing")
        self.require(names)
        return CrossedGate(name="_".join(names), mode=mode, sources=tuple(names))

    def add_cross(self, rule: CrossedGate) -> List[str]:
        self._rules[rule.name] = rule
        self._polygons.pop(rule.name, None)
        return self.add(rule.name)
