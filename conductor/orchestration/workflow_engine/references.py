"""
Pre-parsed ``${...}`` references.

Step inputs and configs are parsed once per run into a tree of reference
objects. ``${name}`` becomes a :class:`VariableRef`, ``${stepId.key}`` (when
``stepId`` names a step of the pipeline) a :class:`StepOutputRef`, strings
mixing text and references a :class:`Template`, and everything else a
:class:`Literal`. Resolving an unknown variable or an output of a step that
has not completed raises :class:`ReferenceResolutionError` rather than leaving
the raw ``${...}`` text in place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

from ...exceptions import ReferenceResolutionError

REFERENCE_RE = re.compile(r"\$\{([^}]+)\}")

_MISSING = object()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class VariableRef:
    """Run-scoped variable, optionally a dotted path into a nested value."""

    name: str


@dataclass(frozen=True)
class StepOutputRef:
    """Output ``key`` of a step in the same run."""

    step_id: str
    key: str


@dataclass(frozen=True)
class Template:
    """String with embedded references, rendered by concatenation."""

    parts: Tuple[Union[str, VariableRef, StepOutputRef], ...]


Reference = Union[Literal, VariableRef, StepOutputRef, Template]


def parse_reference(path: str, step_ids: Iterable[str] = ()) -> Union[VariableRef, StepOutputRef]:
    """Parse the text between ``${`` and ``}``."""
    path = path.strip()
    if "." in path:
        head, rest = path.split(".", 1)
        if head in set(step_ids):
            return StepOutputRef(step_id=head, key=rest)
    return VariableRef(name=path)


def parse_value(value: Any, step_ids: Iterable[str] = ()) -> Any:
    """Parse a literal/reference value into a reference tree.

    Dicts and lists keep their shape with parsed leaves.
    """
    step_ids = frozenset(step_ids)

    if isinstance(value, dict):
        return {key: parse_value(item, step_ids) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_value(item, step_ids) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return Literal(value)

    full = REFERENCE_RE.fullmatch(value)
    if full:
        # A lone reference keeps the type of the resolved value
        return parse_reference(full.group(1), step_ids)

    parts = []
    pos = 0
    for match in REFERENCE_RE.finditer(value):
        if match.start() > pos:
            parts.append(value[pos : match.start()])
        parts.append(parse_reference(match.group(1), step_ids))
        pos = match.end()
    if pos < len(value):
        parts.append(value[pos:])
    return Template(parts=tuple(parts))


def iter_references(parsed: Any) -> Iterator[Union[VariableRef, StepOutputRef]]:
    """Yield every variable and step-output reference in a parsed tree."""
    if isinstance(parsed, dict):
        for item in parsed.values():
            yield from iter_references(item)
    elif isinstance(parsed, list):
        for item in parsed:
            yield from iter_references(item)
    elif isinstance(parsed, Template):
        for part in parsed.parts:
            if not isinstance(part, str):
                yield part
    elif isinstance(parsed, (VariableRef, StepOutputRef)):
        yield parsed


def _lookup(path: str, scope: Mapping[str, Any]) -> Any:
    if path in scope:
        return scope[path]
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _resolve_ref(
    ref: Union[VariableRef, StepOutputRef],
    variables: Mapping[str, Any],
    step_outputs: Mapping[str, Mapping[str, Any]],
    step_id: Optional[str],
) -> Any:
    if isinstance(ref, VariableRef):
        value = _lookup(ref.name, variables)
        if value is _MISSING:
            raise ReferenceResolutionError(f"Unknown variable: ${{{ref.name}}}", step_id=step_id)
        return value

    if ref.step_id not in step_outputs:
        raise ReferenceResolutionError(
            f"Step {ref.step_id} has not completed; cannot resolve ${{{ref.step_id}.{ref.key}}}",
            step_id=step_id,
        )
    value = _lookup(ref.key, step_outputs[ref.step_id])
    if value is _MISSING:
        raise ReferenceResolutionError(
            f"Step {ref.step_id} produced no output '{ref.key}'", step_id=step_id
        )
    return value


def resolve(
    parsed: Any,
    variables: Mapping[str, Any],
    step_outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
    step_id: Optional[str] = None,
) -> Any:
    """Resolve a parsed tree to plain values.

    Args:
        parsed: Output of :func:`parse_value`
        variables: Run variables
        step_outputs: Outputs of completed steps keyed by step id
        step_id: Step being resolved, used in error messages

    Raises:
        ReferenceResolutionError: Unknown variable or missing step output
    """
    step_outputs = step_outputs or {}

    if isinstance(parsed, dict):
        return {key: resolve(item, variables, step_outputs, step_id) for key, item in parsed.items()}
    if isinstance(parsed, list):
        return [resolve(item, variables, step_outputs, step_id) for item in parsed]
    if isinstance(parsed, Literal):
        return parsed.value
    if isinstance(parsed, Template):
        rendered = []
        for part in parsed.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            value = _resolve_ref(part, variables, step_outputs, step_id)
            rendered.append("" if value is None else str(value))
        return "".join(rendered)
    if isinstance(parsed, (VariableRef, StepOutputRef)):
        return _resolve_ref(parsed, variables, step_outputs, step_id)
    return parsed


def resolve_variables(
    value: Any,
    variables: Mapping[str, Any],
    step_outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Any:
    """Parse and resolve ``value`` in one go."""
    step_outputs = step_outputs or {}
    return resolve(parse_value(value, step_outputs.keys()), variables, step_outputs)


def referenced_steps(parsed: Any) -> Dict[str, set]:
    """Map each referenced step id to the output keys used."""
    refs: Dict[str, set] = {}
    for ref in iter_references(parsed):
        if isinstance(ref, StepOutputRef):
            refs.setdefault(ref.step_id, set()).add(ref.key)
    return refs
