"""Reference expressions inside resource properties.

Three intrinsics are understood, in the long form produced by the template
loader:

- ``{"Ref": "Name"}``: a variable, or the external id of resource ``Name``
- ``{"Fn::GetAtt": ["Name", "Attr"]}`` (or ``"Name.Attr"``): an output
  attribute of resource ``Name``
- ``{"Fn::Sub": "text ${Name.Attr}"}`` (or ``[text, {locals}]``): string
  interpolation over locals, variables and references; ``${!x}`` stays
  literal as ``${x}``

Parsing substitutes variables immediately and leaves ``Reference`` /
``Interpolation`` objects in the value tree for the executor to resolve.
"""

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from stackpilot.drivers.base import ProviderResult
from stackpilot.utils.errors import (
    ErrorContext,
    ReferenceResolutionError,
    ValidationError,
    ValidationErrorKind,
)

REF = 'Ref'
GET_ATT = 'Fn::GetAtt'
SUB = 'Fn::Sub'

_PLACEHOLDER = re.compile(r'\$\{([^}]*)\}')
_SCALARS = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class Reference:
    """Pointer to another resource's external id or one of its attributes."""
    target: str
    attribute: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        if self.attribute is None:
            return {REF: self.target}
        return {GET_ATT: [self.target, self.attribute]}

    def __str__(self) -> str:
        if self.attribute is None:
            return self.target
        return f"{self.target}.{self.attribute}"


@dataclass(frozen=True)
class Interpolation:
    """A ``Fn::Sub`` string split into literal text and references."""
    parts: Tuple[Union[str, Reference], ...]

    def references(self) -> List[Reference]:
        return [part for part in self.parts if isinstance(part, Reference)]

    def to_document(self) -> Dict[str, Any]:
        text = []
        for part in self.parts:
            if isinstance(part, Reference):
                text.append(f"${{{part}}}")
            else:
                text.append(part.replace('${', '${!'))
        return {SUB: ''.join(text)}


def stringify(value: Any) -> str:
    """Render a substituted value the way it appears inside a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)


class ReferenceParser:
    """Turns raw property trees into value trees with typed references."""

    def __init__(self, resources: Set[str], variables: Mapping[str, Any]):
        self.resources = resources
        self.variables = variables

    def parse(self, value: Any, resource_id: Optional[str], path: str = '') -> Any:
        """Parse one value tree.

        Args:
            value: Raw value from the document
            resource_id: Resource owning the value, for error context
            path: Dotted location of the value, for error messages

        Returns:
            The value with variables substituted and references typed

        Raises:
            ValidationError: On unknown references or malformed intrinsics
        """
        if isinstance(value, Mapping):
            intrinsic = [key for key in value if key == REF or str(key).startswith('Fn::')]
            if intrinsic:
                if len(value) != 1:
                    self._malformed(f"intrinsic {intrinsic[0]} must be the only key", resource_id, path)
                key = intrinsic[0]
                if key == REF:
                    return self._parse_ref(value[key], resource_id, path)
                if key == GET_ATT:
                    return self._parse_get_att(value[key], resource_id, path)
                if key == SUB:
                    return self._parse_sub(value[key], resource_id, path)
                self._malformed(f"unsupported intrinsic function {key}", resource_id, path)

            parsed = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    self._malformed(f"mapping key {key!r} is not a string", resource_id, path)
                parsed[key] = self.parse(item, resource_id, f"{path}.{key}" if path else key)
            return parsed

        if isinstance(value, (list, tuple)):
            return [self.parse(item, resource_id, f"{path}[{i}]") for i, item in enumerate(value)]

        if isinstance(value, (set, frozenset)):
            return frozenset(self.parse(item, resource_id, path) for item in value)

        if isinstance(value, _SCALARS):
            return value

        self._malformed(f"unsupported value of type {type(value).__name__}", resource_id, path)

    def _parse_ref(self, name: Any, resource_id: Optional[str], path: str) -> Any:
        if not isinstance(name, str):
            self._malformed("Ref expects a name", resource_id, path)
        if name in self.variables:
            return copy.deepcopy(self.variables[name])
        if name in self.resources:
            return Reference(name)
        self._unknown(name, resource_id, path)

    def _parse_get_att(self, value: Any, resource_id: Optional[str], path: str) -> Reference:
        if isinstance(value, str) and '.' in value:
            target, attribute = value.split('.', 1)
        elif (
            isinstance(value, (list, tuple)) and len(value) == 2
            and all(isinstance(part, str) for part in value)
        ):
            target, attribute = value
        else:
            self._malformed("Fn::GetAtt expects 'Name.Attribute' or [Name, Attribute]", resource_id, path)

        if target not in self.resources:
            self._unknown(target, resource_id, path)
        return Reference(target, attribute)

    def _parse_sub(self, value: Any, resource_id: Optional[str], path: str) -> Union[str, Interpolation]:
        local_values: Dict[str, Any] = {}
        if isinstance(value, (list, tuple)):
            if len(value) != 2 or not isinstance(value[0], str) or not isinstance(value[1], Mapping):
                self._malformed("Fn::Sub expects a string or [string, {locals}]", resource_id, path)
            template, raw_locals = value
            for name, raw in raw_locals.items():
                local_values[name] = self.parse(raw, resource_id, f"{path}.{name}")
        elif isinstance(value, str):
            template = value
        else:
            self._malformed("Fn::Sub expects a string or [string, {locals}]", resource_id, path)

        parts: List[Union[str, Reference]] = []
        position = 0
        for match in _PLACEHOLDER.finditer(template):
            parts.append(template[position:match.start()])
            position = match.end()
            name = match.group(1).strip()

            if name.startswith('!'):
                parts.append(f"${{{name[1:]}}}")
            elif name in local_values:
                parts.extend(self._sub_parts(local_values[name]))
            elif name in self.variables:
                parts.append(stringify(self.variables[name]))
            elif name in self.resources:
                parts.append(Reference(name))
            elif '.' in name and name.split('.', 1)[0] in self.resources:
                target, attribute = name.split('.', 1)
                parts.append(Reference(target, attribute))
            else:
                self._unknown(name, resource_id, path)
        parts.append(template[position:])

        merged: List[Union[str, Reference]] = []
        for part in parts:
            if isinstance(part, str) and merged and isinstance(merged[-1], str):
                merged[-1] += part
            elif part != '':
                merged.append(part)

        if not any(isinstance(part, Reference) for part in merged):
            return ''.join(merged)
        return Interpolation(tuple(merged))

    @staticmethod
    def _sub_parts(value: Any) -> List[Union[str, Reference]]:
        if isinstance(value, Reference):
            return [value]
        if isinstance(value, Interpolation):
            return list(value.parts)
        return [stringify(value)]

    @staticmethod
    def _malformed(reason: str, resource_id: Optional[str], path: str) -> None:
        where = f" at {path}" if path else ''
        raise ValidationError(
            f"Malformed value in {resource_id or 'document'}{where}: {reason}",
            kind=ValidationErrorKind.MALFORMED_DOCUMENT,
            resource_id=resource_id,
        )

    @staticmethod
    def _unknown(name: str, resource_id: Optional[str], path: str) -> None:
        where = f" at {path}" if path else ''
        raise ValidationError(
            f"{resource_id or 'document'} references unknown resource or variable '{name}'{where}",
            kind=ValidationErrorKind.UNKNOWN_REFERENCE,
            resource_id=resource_id,
        )


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference in a parsed value tree."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        yield from value.references()
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_references(item)


def resolve_value(
    value: Any,
    outputs: Mapping[str, ProviderResult],
    resource_id: Optional[str] = None
) -> Any:
    """Replace references with runtime values from dependency outputs.

    Sets become lists in canonical order so drivers see plain JSON data.

    Raises:
        ReferenceResolutionError: If a target has no outputs or did not
            report the referenced attribute
    """
    if isinstance(value, Reference):
        result = outputs.get(value.target)
        if result is None:
            raise ReferenceResolutionError(
                f"{resource_id} references {value.target}, which has no outputs in this run",
                context=ErrorContext(resource_id=resource_id, operation='resolve'),
            )
        try:
            return copy.deepcopy(result.get(value.attribute))
        except KeyError:
            raise ReferenceResolutionError(
                f"{resource_id} references attribute '{value.attribute}' "
                f"which {value.target} did not report",
                context=ErrorContext(resource_id=resource_id, operation='resolve'),
                suggestions=[f"Available attributes: {', '.join(sorted(result.attributes)) or 'none'}"],
            ) from None
    if isinstance(value, Interpolation):
        return ''.join(
            stringify(resolve_value(part, outputs, resource_id)) if isinstance(part, Reference) else part
            for part in value.parts
        )
    if isinstance(value, Mapping):
        return {key: resolve_value(item, outputs, resource_id) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, outputs, resource_id) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(
            (resolve_value(item, outputs, resource_id) for item in value),
            key=lambda item: repr(canonicalize(item))
        )
    return value


def to_document(value: Any) -> Any:
    """Serializable form of a parsed value tree, references left unresolved."""
    if isinstance(value, (Reference, Interpolation)):
        return value.to_document()
    if isinstance(value, Mapping):
        return {key: to_document(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((to_document(item) for item in value), key=lambda item: repr(canonicalize(item)))
    return value


def canonicalize(value: Any) -> Any:
    """Hashable normal form used for structural equality.

    Mapping key order is ignored, sequence order is kept, set order is
    ignored, and booleans never compare equal to numbers.
    """
    if isinstance(value, Reference):
        return ('ref', value.target, value.attribute)
    if isinstance(value, Interpolation):
        return ('sub', tuple(canonicalize(part) for part in value.parts))
    if isinstance(value, Mapping):
        return ('map', tuple(sorted((str(key), canonicalize(item)) for key, item in value.items())))
    if isinstance(value, (list, tuple)):
        return ('seq', tuple(canonicalize(item) for item in value))
    if isinstance(value, (set, frozenset)):
        return ('set', tuple(sorted((canonicalize(item) for item in value), key=repr)))
    if isinstance(value, bool):
        return ('bool', value)
    if isinstance(value, (int, float)):
        return ('num', value)
    if value is None:
        return ('null',)
    return ('str', str(value))
