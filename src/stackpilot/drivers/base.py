"""Base driver interface and the provider result type."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from dataclasses import dataclass, field


@dataclass
class ProviderResult:
    """What a provider reports back for a resource.

    ``external_id`` is what ``Ref`` resolves to; ``attributes`` are what
    ``Fn::GetAtt`` resolves against.
    """
    external_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get(self, attribute: Optional[str]) -> Any:
        """Look up a referenced value; ``None`` means the external id.

        Raises:
            KeyError: If the attribute was not reported by the provider
        """
        if attribute is None:
            return self.external_id
        return self.attributes[attribute]


class BaseDriver(ABC):
    """Convenience base class for resource drivers.

    The registry only requires the four capabilities to be present, so a
    driver does not have to inherit from this class.
    """

    @abstractmethod
    def create(self, properties: Dict[str, Any]) -> ProviderResult:
        """Create the resource.

        Args:
            properties: Fully resolved resource properties

        Returns:
            ProviderResult with the provider-assigned id and attributes
        """
        pass

    def read(self, external_id: Optional[str], properties: Dict[str, Any]) -> Optional[ProviderResult]:
        """Fetch the current provider-side view of the resource.

        Args:
            external_id: Provider-assigned id, if known
            properties: Last resolved properties sent to the provider

        Returns:
            Current result, or None if the resource does not exist or the
            driver cannot look it up
        """
        # Default implementation - subclasses should override
        return None

    @abstractmethod
    def update(
        self,
        external_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProviderResult:
        """Update the resource in place.

        Args:
            external_id: Provider-assigned id
            properties: Desired resolved properties
            previous: Resolved properties from the last successful apply

        Returns:
            ProviderResult after the update
        """
        pass

    @abstractmethod
    def delete(self, external_id: str, properties: Dict[str, Any]) -> None:
        """Delete the resource.

        Args:
            external_id: Provider-assigned id
            properties: Resolved properties from the last successful apply
        """
        pass
