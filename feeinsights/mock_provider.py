"""Configurable in-memory fee provider for tests and local runs."""

import threading
from typing import List, Optional

from .errors import ProviderError, ServiceUnavailable
from .provider import FeeDataProvider
from .types import FeeDataPoint, ProviderMetadata


class MockFeeDataProvider(FeeDataProvider):
    """
    Fee provider returning a fixed set of points or a fixed error.

    Example:
        mock = MockFeeDataProvider().with_fees([point]).with_healthy(True)

    A configured error takes precedence over configured points. The fetch
    counter is incremented on every call, successful or not.
    """

    def __init__(self):
        self._responses: List[FeeDataPoint] = []
        self._error: Optional[ProviderError] = None
        self._healthy = True
        self._call_count = 0
        self._lock = threading.Lock()

    def with_fees(self, fees: List[FeeDataPoint]) -> "MockFeeDataProvider":
        self._responses = list(fees)
        return self

    def with_error(self, error: Optional[ProviderError]) -> "MockFeeDataProvider":
        """Fail every fetch with ``error`` (``None`` clears it)."""
        self._error = error
        return self

    def with_healthy(self, healthy: bool) -> "MockFeeDataProvider":
        self._healthy = healthy
        return self

    def calls(self) -> int:
        """Number of ``fetch_latest_fees`` invocations so far."""
        with self._lock:
            return self._call_count

    def fetch_latest_fees(self) -> List[FeeDataPoint]:
        with self._lock:
            self._call_count += 1
        if self._error is not None:
            raise self._error.clone()
        return list(self._responses)

    def provider_name(self) -> str:
        return "MockHorizon"

    def health_check(self) -> None:
        if not self._healthy:
            raise ServiceUnavailable()

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            supports_historical=False,
            max_batch_size=100,
            rate_limit_per_minute=None,
            data_freshness_seconds=5,
        )
