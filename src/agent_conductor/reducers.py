"""Per-field merge policies for partial state updates returned by graph nodes."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import rfc8785

from .canonical import to_json_primitive
from .errors import GraphDefinitionError


class Reducer(str, Enum):
    APPEND = "append"
    OVERWRITE = "overwrite"
    UNION = "union"


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _append(current: Any, incoming: Any) -> list[Any]:
    return _as_list(current) + _as_list(incoming)


def _overwrite(_current: Any, incoming: Any) -> Any:
    return incoming


def _union(current: Any, incoming: Any) -> list[Any]:
    merged: dict[bytes, Any] = {}
    for item in _as_list(current) + _as_list(incoming):
        merged[rfc8785.dumps(item)] = item
    return [merged[key] for key in sorted(merged)]


_REDUCERS = {
    Reducer.APPEND: _append,
    Reducer.OVERWRITE: _overwrite,
    Reducer.UNION: _union,
}


@dataclass(frozen=True)
class FieldSpec:
    name: str
    reducer: Reducer = Reducer.OVERWRITE
    default: Any = None
    required: bool = False


@dataclass(frozen=True)
class StateSchema:
    """Declared run-state fields, each with exactly one reducer."""

    name: str
    fields: Mapping[str, FieldSpec] = field(default_factory=dict)

    @classmethod
    def build(cls, name: str, specs: Iterable[FieldSpec]) -> "StateSchema":
        fields: dict[str, FieldSpec] = {}
        for spec in specs:
            if spec.name in fields:
                raise GraphDefinitionError(f"{name}: field {spec.name!r} declared twice")
            fields[spec.name] = spec
        return cls(name=name, fields=fields)

    def extend(self, name: str, specs: Iterable[FieldSpec]) -> "StateSchema":
        return StateSchema.build(name, [*self.fields.values(), *specs])

    def check_fields(self, names: Iterable[str], *, owner: str) -> None:
        unknown = sorted(set(names) - set(self.fields))
        if unknown:
            raise GraphDefinitionError(f"{self.name}: {owner} writes undeclared fields {unknown}")

    def initial_state(self, values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        provided = dict(values or {})
        self.check_fields(provided, owner="initial state")
        state: dict[str, Any] = {}
        for spec in self.fields.values():
            if spec.name in provided:
                state[spec.name] = to_json_primitive(provided[spec.name])
            elif spec.required:
                raise GraphDefinitionError(f"{self.name}: required field {spec.name!r} missing from initial state")
            elif spec.default is None and spec.reducer is not Reducer.OVERWRITE:
                state[spec.name] = []
            else:
                state[spec.name] = copy.deepcopy(to_json_primitive(spec.default))
            if spec.reducer is Reducer.UNION:
                state[spec.name] = _union([], state[spec.name])
        return state

    def apply(self, state: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
        """Merge one partial update; fields absent from ``update`` are left untouched."""
        self.check_fields(update, owner="update")
        merged = dict(state)
        for name, value in update.items():
            reducer = _REDUCERS[self.fields[name].reducer]
            merged[name] = reducer(merged.get(name), to_json_primitive(value))
        return merged

    def apply_all(self, state: Mapping[str, Any], updates: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
        merged = dict(state)
        for update in updates:
            merged = self.apply(merged, update)
        return merged

    def missing_required(self, state: Mapping[str, Any]) -> list[str]:
        return sorted(spec.name for spec in self.fields.values() if spec.required and spec.name not in state)
