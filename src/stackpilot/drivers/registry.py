"""Registry mapping resource type tags to drivers."""

import threading
from typing import Any, Dict, List

from stackpilot.utils.errors import ConfigurationError, DriverNotFoundError
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)

REQUIRED_CAPABILITIES = ('create', 'read', 'update', 'delete')


class DriverRegistry:
    """Capability registry keyed by resource type tag."""

    def __init__(self) -> None:
        self._drivers: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, type_tag: str, driver: Any, replace: bool = False) -> None:
        """Register a driver for a resource type.

        Args:
            type_tag: Resource type (e.g. AWS::S3::Bucket)
            driver: Object exposing create/read/update/delete
            replace: Allow overriding an existing registration

        Raises:
            ConfigurationError: If the driver lacks a capability or the type
                is already registered
        """
        if not type_tag:
            raise ConfigurationError("Resource type tag must be a non-empty string")

        missing = [cap for cap in REQUIRED_CAPABILITIES if not callable(getattr(driver, cap, None))]
        if missing:
            raise ConfigurationError(
                f"Driver for {type_tag} is missing capabilities: {', '.join(missing)}"
            )

        with self._lock:
            if type_tag in self._drivers and not replace:
                raise ConfigurationError(f"A driver is already registered for {type_tag}")
            self._drivers[type_tag] = driver

        logger.debug(f"Registered driver {type(driver).__name__} for {type_tag}")

    def resolve(self, type_tag: str) -> Any:
        """Get the driver for a resource type.

        Raises:
            DriverNotFoundError: If nothing is registered for the type
        """
        try:
            return self._drivers[type_tag]
        except KeyError:
            raise DriverNotFoundError(type_tag) from None

    def unregister(self, type_tag: str) -> None:
        with self._lock:
            self._drivers.pop(type_tag, None)

    def types(self) -> List[str]:
        """Registered type tags, sorted."""
        return sorted(self._drivers)

    def __contains__(self, type_tag: object) -> bool:
        return type_tag in self._drivers

    def __len__(self) -> int:
        return len(self._drivers)
