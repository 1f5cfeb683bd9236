"""Stellar Horizon fee data provider."""

import requests
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_HORIZON_BATCH_SIZE,
    DEFAULT_HORIZON_MAX_PAGES,
    DEFAULT_HTTP_TIMEOUT_SECS,
    HORIZON_DATA_FRESHNESS_SECS,
    HORIZON_RATE_LIMIT_PER_MINUTE,
)
from .errors import (
    AuthError,
    FormatError,
    NetworkError,
    RateLimitExceeded,
    ServiceUnavailable,
)
from .logging import get_logger
from .provider import FeeDataProvider
from .types import FeeDataPoint, ProviderMetadata, parse_timestamp

logger = get_logger(__name__)

_UNAVAILABLE_STATUSES = (502, 503, 504)
_AUTH_STATUSES = (401, 403)


class HorizonFeeDataProvider(FeeDataProvider):
    """Reads charged fees of recent transactions from a Horizon server."""

    def __init__(
        self,
        base_url: str,
        timeout_secs: float = DEFAULT_HTTP_TIMEOUT_SECS,
        batch_size: int = DEFAULT_HORIZON_BATCH_SIZE,
        session: Optional[requests.Session] = None,
        max_pages: int = DEFAULT_HORIZON_MAX_PAGES,
    ):
        """
        Initialize Horizon provider.

        Args:
            base_url: Horizon root URL (e.g., "https://horizon.stellar.org")
            timeout_secs: Per-request timeout
            batch_size: Transactions requested per page (Horizon caps at 200)
            session: Optional pre-configured requests session
            max_pages: Most pages read by one fetch while pages come back full
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_secs = timeout_secs
        self.batch_size = min(batch_size, DEFAULT_HORIZON_BATCH_SIZE)
        self.max_pages = max(1, max_pages)
        self.session = session or requests.Session()
        self.session.headers["accept"] = "application/hal+json"
        self.cursor: Optional[str] = None

    def _get(self, path: str, params: Dict[str, Any] = None) -> Any:
        """
        GET a Horizon resource and decode its JSON body.

        Raises:
            ProviderError: Transport, HTTP status and decoding failures mapped
                into the provider taxonomy
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout_secs)
        except requests.Timeout as e:
            raise NetworkError(f"timeout calling {url}: {e}")
        except requests.RequestException as e:
            raise NetworkError(f"request to {url} failed: {e}")

        status = response.status_code
        if status == 429:
            raise RateLimitExceeded()
        if status in _AUTH_STATUSES:
            raise AuthError(f"{url} returned {status}")
        if status in _UNAVAILABLE_STATUSES:
            raise ServiceUnavailable()
        if status >= 400:
            raise NetworkError(f"{url} returned {status}: {response.reason}")

        try:
            return response.json()
        except ValueError as e:
            raise FormatError(f"invalid JSON from {url}: {e}")

    def _parse_record(self, record: Any) -> FeeDataPoint:
        if not isinstance(record, dict):
            raise FormatError(f"transaction record is not an object: {record!r}")
        try:
            return FeeDataPoint(
                fee_amount=int(record["fee_charged"]),
                timestamp=parse_timestamp(record["created_at"]),
                transaction_hash=str(record["hash"]),
                ledger_sequence=int(record["ledger"]),
            )
        except KeyError as e:
            raise FormatError(f"transaction record missing field {e}")
        except (TypeError, ValueError, AttributeError) as e:
            raise FormatError(f"malformed transaction record: {e}")

    def _fetch_page(self, params: Dict[str, Any]):
        """Fetch one transactions page; returns (points, last paging token, record count)."""
        body = self._get("/transactions", params)
        try:
            records = body["_embedded"]["records"]
        except (KeyError, TypeError):
            raise FormatError("response has no _embedded.records list")
        if not isinstance(records, list):
            raise FormatError("_embedded.records is not a list")

        if params["order"] == "desc":
            records = list(reversed(records))

        points = [self._parse_record(record) for record in records]

        token = None
        if records:
            token = records[-1].get("paging_token")
            if not token:
                raise FormatError("transaction record missing paging_token")
            token = str(token)
        return points, token, len(records)

    def fetch_latest_fees(self) -> List[FeeDataPoint]:
        """
        Fetch transactions newer than the stored cursor.

        The first call reads the newest page and reverses it. Later calls
        page forward from the cursor, following full pages up to
        ``max_pages`` per call; any remaining backlog is read by the next
        fetch. The cursor only advances once every page of the call parsed,
        so a malformed page is re-read on the next fetch.
        """
        if self.cursor is None:
            points, cursor, _ = self._fetch_page({"order": "desc", "limit": self.batch_size})
        else:
            points, cursor = [], self.cursor
            for _ in range(self.max_pages):
                page_points, token, size = self._fetch_page(
                    {"order": "asc", "limit": self.batch_size, "cursor": cursor}
                )
                points.extend(page_points)
                if token is not None:
                    cursor = token
                if size < self.batch_size:
                    break
            else:
                logger.warning(
                    f"Read {self.max_pages} full pages from {self.base_url}; "
                    f"deferring remaining backlog to the next fetch"
                )

        if cursor is not None:
            self.cursor = cursor

        logger.debug(f"Fetched {len(points)} fee samples from {self.base_url} (cursor={self.cursor})")
        return points

    def provider_name(self) -> str:
        return "Horizon"

    def health_check(self) -> None:
        body = self._get("/")
        if not isinstance(body, dict):
            raise FormatError("Horizon root response is not an object")

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            supports_historical=True,
            max_batch_size=DEFAULT_HORIZON_BATCH_SIZE,
            rate_limit_per_minute=HORIZON_RATE_LIMIT_PER_MINUTE,
            data_freshness_seconds=HORIZON_DATA_FRESHNESS_SECS,
        )

    def close(self) -> None:
        self.session.close()
