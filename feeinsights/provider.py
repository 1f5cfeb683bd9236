"""Fee data provider interface."""

from abc import ABC, abstractmethod
from typing import List

from .types import FeeDataPoint, ProviderMetadata


class FeeDataProvider(ABC):
    """
    Source of fee samples for the insights engine.

    Implementations raise a ``ProviderError`` subclass on failure and never
    anything else. ``health_check`` and ``fetch_latest_fees`` are independent
    signals: a provider may pass one and fail the other.
    """

    @abstractmethod
    def fetch_latest_fees(self) -> List[FeeDataPoint]:
        """
        Return samples observed since the last successful fetch.

        Returns:
            Zero or more fee data points, in provider order

        Raises:
            ProviderError: On any failure to obtain or parse samples
        """

    @abstractmethod
    def provider_name(self) -> str:
        """Stable identifier used in logs and status output."""

    @abstractmethod
    def health_check(self) -> None:
        """
        Check upstream reachability.

        Raises:
            ProviderError: If the provider is unhealthy
        """

    @abstractmethod
    def get_metadata(self) -> ProviderMetadata:
        """Static capability descriptor; must not have side effects."""
