"""Dependency graph built from a normalized resource document."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set, Tuple

from stackpilot.drivers.registry import DriverRegistry
from stackpilot.orchestrator.references import Reference, ReferenceParser, iter_references
from stackpilot.utils.errors import ValidationError, ValidationErrorKind
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)

DECLARATION_KEYS = frozenset({'id', 'type', 'properties', 'depends_on'})


@dataclass(frozen=True)
class ResourceNode:
    """One declared resource.

    ``properties`` is the parsed value tree: variables substituted and
    references still symbolic.
    """

    identifier: str
    type: str
    properties: Mapping[str, Any]
    depends_on: Tuple[str, ...] = ()
    index: int = 0

    def references(self) -> List[Reference]:
        """All references held in this resource's properties."""
        return list(iter_references(self.properties))


@dataclass(frozen=True)
class ResourceGraph:
    """Immutable DAG candidate over declared resources.

    Nodes live in an arena indexed by declaration order; edges are sets of
    node indices. Cycles are not rejected here, that happens at plan
    compilation.
    """

    nodes: Tuple[ResourceNode, ...] = ()
    dependencies: Tuple[FrozenSet[int], ...] = ()
    dependents: Tuple[FrozenSet[int], ...] = ()
    outputs: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    _index: Mapping[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        if not self._index:
            object.__setattr__(
                self, '_index', {node.identifier: node.index for node in self.nodes}
            )

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._index

    def index_of(self, identifier: str) -> int:
        """Arena index of a resource.

        Raises:
            KeyError: If the resource is not in the graph
        """
        return self._index[identifier]

    def node(self, identifier: str) -> ResourceNode:
        return self.nodes[self._index[identifier]]

    def identifiers(self) -> List[str]:
        return [node.identifier for node in self.nodes]

    def get_dependencies(self, identifier: str) -> List[str]:
        """Get direct dependencies of a resource, in declaration order.

        Args:
            identifier: ID of resource

        Returns:
            List of resource IDs this resource depends on
        """
        return [self.nodes[i].identifier for i in sorted(self.dependencies[self._index[identifier]])]

    def get_dependents(self, identifier: str) -> List[str]:
        """Get direct dependents of a resource, in declaration order.

        Args:
            identifier: ID of resource

        Returns:
            List of resource IDs that depend on this resource
        """
        return [self.nodes[i].identifier for i in sorted(self.dependents[self._index[identifier]])]

    def get_all_dependents(self, identifier: str) -> Set[str]:
        """Get all transitive dependents of a resource.

        Args:
            identifier: ID of resource

        Returns:
            Set of all resource IDs that depend on this resource
        """
        start = self._index[identifier]
        visited = {start}
        queue = deque([start])

        while queue:
            current = queue.popleft()
            for dependent in self.dependents[current]:
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)

        visited.discard(start)
        return {self.nodes[i].identifier for i in visited}

    def edge_count(self) -> int:
        return sum(len(deps) for deps in self.dependencies)


class GraphBuilder:
    """Validates a normalized document and builds its ResourceGraph.

    The normalized document has the shape::

        {
            "variables": {name: value},
            "resources": {identifier: {"type", "properties", "depends_on"}},
            "outputs": {name: value},
        }

    ``resources`` may also be a list of declarations carrying an ``id`` key.
    """

    def __init__(self, registry: Optional[DriverRegistry] = None):
        """
        Initialize GraphBuilder.

        Args:
            registry: Driver registry used to reject unknown resource types;
                type tags are not checked when None
        """
        self.registry = registry

    def build(self, document: Mapping[str, Any]) -> ResourceGraph:
        """Build the resource graph for a document.

        Args:
            document: Normalized resource document

        Returns:
            ResourceGraph with one node per declaration

        Raises:
            ValidationError: On duplicate identifiers, unknown references,
                unknown types or malformed declarations
        """
        if not isinstance(document, Mapping):
            raise ValidationError(
                "Resource document must be a mapping",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )

        variables = document.get('variables') or {}
        if not isinstance(variables, Mapping):
            raise ValidationError(
                "'variables' must be a mapping",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )

        declarations = self._collect_declarations(document.get('resources') or {})

        for identifier, _ in declarations:
            if identifier in variables:
                raise ValidationError(
                    f"Identifier '{identifier}' is declared both as a variable and a resource",
                    kind=ValidationErrorKind.DUPLICATE_IDENTIFIER,
                    resource_id=identifier
                )

        identifiers = {identifier for identifier, _ in declarations}
        parser = ReferenceParser(identifiers, variables)
        index = {identifier: i for i, (identifier, _) in enumerate(declarations)}

        nodes: List[ResourceNode] = []
        dependencies: List[Set[int]] = []
        for i, (identifier, declaration) in enumerate(declarations):
            type_tag = declaration.get('type')
            if not isinstance(type_tag, str) or not type_tag:
                raise ValidationError(
                    f"Resource '{identifier}' has no type",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                    resource_id=identifier
                )
            if self.registry is not None and type_tag not in self.registry:
                raise ValidationError(
                    f"Resource '{identifier}' has unknown type '{type_tag}'",
                    kind=ValidationErrorKind.UNKNOWN_TYPE,
                    resource_id=identifier,
                    suggestions=[f"Registered types: {', '.join(self.registry.types()) or 'none'}"]
                )

            raw_properties = declaration.get('properties') or {}
            if not isinstance(raw_properties, Mapping):
                raise ValidationError(
                    f"Properties of '{identifier}' must be a mapping",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                    resource_id=identifier
                )
            properties = parser.parse(raw_properties, identifier)

            depends_on = self._explicit_dependencies(identifier, declaration.get('depends_on'), identifiers)

            edges = {index[target] for target in depends_on}
            edges.update(index[ref.target] for ref in iter_references(properties))

            nodes.append(ResourceNode(
                identifier=identifier,
                type=type_tag,
                properties=properties,
                depends_on=depends_on,
                index=i
            ))
            dependencies.append(edges)

        dependents: List[Set[int]] = [set() for _ in nodes]
        for i, edges in enumerate(dependencies):
            for dep in edges:
                dependents[dep].add(i)

        raw_outputs = document.get('outputs') or {}
        if not isinstance(raw_outputs, Mapping):
            raise ValidationError(
                "'outputs' must be a mapping",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )
        outputs = {
            name: parser.parse(value, None, f"outputs.{name}")
            for name, value in raw_outputs.items()
        }

        graph = ResourceGraph(
            nodes=tuple(nodes),
            dependencies=tuple(frozenset(edges) for edges in dependencies),
            dependents=tuple(frozenset(edges) for edges in dependents),
            outputs=outputs,
            variables=dict(variables),
            _index=index
        )

        logger.debug(f"Built resource graph with {len(graph)} nodes and {graph.edge_count()} edges")
        return graph

    def _collect_declarations(self, resources: Any) -> List[Tuple[str, Mapping[str, Any]]]:
        declarations: List[Tuple[str, Mapping[str, Any]]] = []
        seen: Set[str] = set()

        if isinstance(resources, Mapping):
            items = list(resources.items())
        elif isinstance(resources, (list, tuple)):
            items = []
            for declaration in resources:
                if not isinstance(declaration, Mapping) or 'id' not in declaration:
                    raise ValidationError(
                        "Each resource declaration in a list must be a mapping with an 'id'",
                        kind=ValidationErrorKind.MALFORMED_DOCUMENT
                    )
                items.append((declaration['id'], declaration))
        else:
            raise ValidationError(
                "'resources' must be a mapping or a list of declarations",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )

        for identifier, declaration in items:
            if not isinstance(identifier, str) or not identifier:
                raise ValidationError(
                    f"Resource identifier {identifier!r} must be a non-empty string",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT
                )
            if identifier in seen:
                raise ValidationError(
                    f"Resource identifier '{identifier}' is declared more than once",
                    kind=ValidationErrorKind.DUPLICATE_IDENTIFIER,
                    resource_id=identifier
                )
            if not isinstance(declaration, Mapping):
                raise ValidationError(
                    f"Declaration of '{identifier}' must be a mapping",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                    resource_id=identifier
                )
            unknown = set(declaration) - DECLARATION_KEYS
            if unknown:
                raise ValidationError(
                    f"Declaration of '{identifier}' has unknown keys: {', '.join(sorted(unknown))}",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                    resource_id=identifier
                )
            seen.add(identifier)
            declarations.append((identifier, declaration))

        return declarations

    @staticmethod
    def _explicit_dependencies(identifier: str, depends_on: Any, identifiers: Set[str]) -> Tuple[str, ...]:
        if depends_on is None:
            return ()
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, (list, tuple)) or not all(isinstance(d, str) for d in depends_on):
            raise ValidationError(
                f"depends_on of '{identifier}' must be a name or a list of names",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                resource_id=identifier
            )

        result: List[str] = []
        for target in depends_on:
            if target not in identifiers:
                raise ValidationError(
                    f"Resource '{identifier}' depends on '{target}' which does not exist",
                    kind=ValidationErrorKind.UNKNOWN_REFERENCE,
                    resource_id=identifier
                )
            if target not in result:
                result.append(target)
        return tuple(result)
