"""
Dot-path access into schema-less subject records.

A subject is any nested mapping. A feature such as ``"Labs.Bilirubin"`` is
resolved lazily; anything absent along the way resolves to ``None`` and stays
missing all the way through fitting and evaluation.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import MissingFeatureError


class FeatureKind(str, Enum):
    NUMERICAL = "numerical"
    CATEGORICAL = "categorical"
    BOOLEAN = "boolean"


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def resolve(subject: Any, path: str) -> Any:
    """Return the value at ``path`` or ``None`` if any segment is absent."""
    value = subject
    for segment in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(segment)
        elif _is_sequence(value) and segment.isdigit():
            index = int(segment)
            value = value[index] if index < len(value) else None
        else:
            return None
        if value is None:
            return None
    return value


def numeric(value: Any) -> Optional[float]:
    """Numeric reading of a resolved value; sequences count their items."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        value = float(value)
        return None if math.isnan(value) else value
    if _is_sequence(value):
        return float(len(value))
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    try:
        parsed = float(value)  # numpy scalars
    except (TypeError, ValueError):
        return None
    return None if math.isnan(parsed) else parsed


def categoric(value: Any) -> Optional[str]:
    """Categorical reading of a resolved value; sequences become a sorted key."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if _is_sequence(value):
        return ",".join(sorted(str(item) for item in value))
    return str(value)


def truthy(value: Any) -> Optional[bool]:
    """Event reading of a resolved value, used for composite outcomes."""
    if value is None:
        return None
    number = numeric(value)
    if number is not None:
        return number != 0
    return bool(value)


def replace(subject: Mapping, path: str, value: Any) -> Dict[str, Any]:
    """Copy of ``subject`` with only ``path`` set to ``value``."""
    return _replace(subject, path.split("."), value)


def _replace(container: Any, segments: List[str], value: Any) -> Any:
    head, rest = segments[0], segments[1:]
    if _is_sequence(container) and head.isdigit():
        # Index segments copy the list and keep its other elements in place
        copy = list(container)
        index = int(head)
        copy.extend([None] * (index + 1 - len(copy)))
    else:
        copy = dict(container) if isinstance(container, Mapping) else {}
        index = head
    if rest:
        child = copy.get(index) if isinstance(copy, dict) else copy[index]
        copy[index] = _replace(child, rest, value)
    else:
        copy[index] = value
    return copy


def infer_kind(values: Iterable[Any]) -> Optional[FeatureKind]:
    """Infer a feature kind from the non-missing values it takes."""
    kinds = set()
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            kinds.add(FeatureKind.BOOLEAN)
        elif _is_sequence(value) or numeric(value) is not None and not isinstance(value, str):
            kinds.add(FeatureKind.NUMERICAL)
        else:
            kinds.add(FeatureKind.CATEGORICAL)
    if not kinds:
        return None
    if FeatureKind.CATEGORICAL in kinds:
        return FeatureKind.CATEGORICAL
    if kinds == {FeatureKind.BOOLEAN}:
        return FeatureKind.BOOLEAN
    return FeatureKind.NUMERICAL


@dataclass(frozen=True)
class FeatureSpec:
    """A feature path and the kind of values found behind it."""

    path: str
    kind: FeatureKind

    @property
    def categorical(self) -> bool:
        return self.kind == FeatureKind.CATEGORICAL

    def read(self, subject: Any) -> Any:
        """Resolve and convert for this kind (``None`` when missing)."""
        value = resolve(subject, self.path)
        return categoric(value) if self.categorical else numeric(value)

    @classmethod
    def infer(cls, subjects: Iterable[Any], path: str) -> "FeatureSpec":
        kind = infer_kind(resolve(subject, path) for subject in subjects)
        if kind is None:
            raise MissingFeatureError(path)
        return cls(path, kind)

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "kind": self.kind.value}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "FeatureSpec":
        return cls(data["path"], FeatureKind(data["kind"]))


def infer_features(subjects: List[Any], paths: Iterable[Any]) -> List[FeatureSpec]:
    """Build specs for ``paths``; already-built specs pass through unchanged."""
    specs = []
    for path in paths:
        specs.append(path if isinstance(path, FeatureSpec) else FeatureSpec.infer(subjects, path))
    return specs
