"""In-memory driver that simulates a provider for local runs and tests."""

import copy
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from stackpilot.drivers.base import BaseDriver, ProviderResult
from stackpilot.utils.errors import PermanentDriverError

AttributeFactory = Callable[[str, Dict[str, Any]], Dict[str, Any]]


def default_attributes(external_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    """Echo properties back as attributes and add a fake ARN."""
    attributes = copy.deepcopy(properties)
    attributes.setdefault('Arn', f"arn:stackpilot:memory:::{external_id}")
    return attributes


class InMemoryDriver(BaseDriver):
    """Simulated provider keeping resources in a dictionary.

    Every call is recorded in ``calls`` as ``(operation, external_id)`` so
    tests can assert what the executor asked for.
    """

    def __init__(
        self,
        type_tag: str,
        attribute_factory: Optional[AttributeFactory] = None,
        id_prefix: Optional[str] = None
    ):
        self.type_tag = type_tag
        self.attribute_factory = attribute_factory or default_attributes
        self.id_prefix = id_prefix or type_tag.split('::')[-1].lower()
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self._lock = threading.Lock()

    def create(self, properties: Dict[str, Any]) -> ProviderResult:
        external_id = f"{self.id_prefix}-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.calls.append(('create', external_id))
            self.resources[external_id] = copy.deepcopy(properties)
        return self._result(external_id, properties)

    def read(self, external_id: Optional[str], properties: Dict[str, Any]) -> Optional[ProviderResult]:
        with self._lock:
            self.calls.append(('read', external_id))
            current = self.resources.get(external_id) if external_id else None
        if current is None:
            return None
        return self._result(external_id, current)

    def update(
        self,
        external_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProviderResult:
        # Resources unknown to this process are adopted so that a local
        # simulation keeps working across separate runs.
        with self._lock:
            self.calls.append(('update', external_id))
            self.resources[external_id] = copy.deepcopy(properties)
        return self._result(external_id, properties)

    def delete(self, external_id: str, properties: Dict[str, Any]) -> None:
        with self._lock:
            self.calls.append(('delete', external_id))
            self.resources.pop(external_id, None)

    def operations(self, name: str) -> List[Optional[str]]:
        """External ids passed to one kind of operation, in call order."""
        return [ext_id for op, ext_id in self.calls if op == name]

    def _result(self, external_id: str, properties: Dict[str, Any]) -> ProviderResult:
        try:
            attributes = self.attribute_factory(external_id, properties)
        except Exception as e:
            raise PermanentDriverError(
                f"Attribute factory failed for {self.type_tag}: {e}", cause=e
            ) from e
        return ProviderResult(external_id=external_id, attributes=attributes)
