"""Core data types for fee insights: samples, snapshots and status values."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def to_utc(ts: datetime) -> datetime:
    """Return ``ts`` as an aware UTC datetime (naive values are taken as UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """
    Render a datetime as an ISO-8601 UTC string with a ``Z`` suffix.

    Always carries microseconds so stored strings sort chronologically.
    """
    return to_utc(ts).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string (``Z`` or offset suffix) into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))


class CongestionState(Enum):
    """Detector classification of current fee-market conditions."""
    NORMAL = "normal"
    CONGESTED = "congested"


class EngineHealth(Enum):
    """Externally observable engine health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class CyclePhase(Enum):
    """Where the ingestion loop currently is within a cycle."""
    IDLE = "idle"
    FETCHING = "fetching"
    INGESTING = "ingesting"
    RECOMPUTING = "recomputing"
    SNAPSHOTTING = "snapshotting"
    DEGRADED = "degraded"


class SnapshotPolicy(Enum):
    """Whether a cycle always emits a snapshot or only when values change."""
    ALWAYS = "always"
    ON_CHANGE = "on_change"


@dataclass(frozen=True)
class FeeDataPoint:
    """One observed transaction fee at ledger-consensus time."""
    fee_amount: int          # smallest network unit (stroops)
    timestamp: datetime      # UTC
    transaction_hash: str
    ledger_sequence: int

    def __post_init__(self):
        if self.fee_amount < 0:
            raise ValueError(f"fee_amount must be non-negative, got {self.fee_amount}")
        if self.ledger_sequence < 0:
            raise ValueError(f"ledger_sequence must be non-negative, got {self.ledger_sequence}")
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))

    def to_record(self) -> Dict[str, Any]:
        """Persisted shape of the point."""
        return {
            "fee_amount": self.fee_amount,
            "timestamp": format_timestamp(self.timestamp),
            "transaction_hash": self.transaction_hash,
            "ledger_sequence": self.ledger_sequence,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FeeDataPoint":
        return cls(
            fee_amount=int(record["fee_amount"]),
            timestamp=parse_timestamp(record["timestamp"]),
            transaction_hash=str(record["transaction_hash"]),
            ledger_sequence=int(record["ledger_sequence"]),
        )


@dataclass(frozen=True)
class FeeSnapshot:
    """
    Immutable computed summary of the fee window.

    Fee magnitudes are decimal strings so that they survive storage and
    serialization without float rounding. Only the five record fields are
    persisted; ``sample_count`` and ``congestion`` are in-memory context for
    readers of the current snapshot.
    """
    base_fee: str
    min_fee: str
    max_fee: str
    avg_fee: str
    captured_at: datetime
    sample_count: int = 0
    congestion: CongestionState = CongestionState.NORMAL

    def __post_init__(self):
        object.__setattr__(self, "captured_at", to_utc(self.captured_at))

    def same_values(self, other: Optional["FeeSnapshot"]) -> bool:
        """True when ``other`` has identical base/min/max/avg values."""
        if other is None:
            return False
        return (
            self.base_fee == other.base_fee
            and self.min_fee == other.min_fee
            and self.max_fee == other.max_fee
            and self.avg_fee == other.avg_fee
        )

    def to_record(self) -> Dict[str, str]:
        return {
            "base_fee": self.base_fee,
            "min_fee": self.min_fee,
            "max_fee": self.max_fee,
            "avg_fee": self.avg_fee,
            "captured_at": format_timestamp(self.captured_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Record fields plus in-memory context, for JSON output."""
        payload: Dict[str, Any] = self.to_record()
        payload["sample_count"] = self.sample_count
        payload["congestion"] = self.congestion.value
        return payload

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FeeSnapshot":
        return cls(
            base_fee=str(record["base_fee"]),
            min_fee=str(record["min_fee"]),
            max_fee=str(record["max_fee"]),
            avg_fee=str(record["avg_fee"]),
            captured_at=parse_timestamp(record["captured_at"]),
        )


@dataclass(frozen=True)
class ProviderMetadata:
    """Static capability descriptor of a fee data provider."""
    supports_historical: bool
    max_batch_size: int
    rate_limit_per_minute: Optional[int]
    data_freshness_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supports_historical": self.supports_historical,
            "max_batch_size": self.max_batch_size,
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "data_freshness_seconds": self.data_freshness_seconds,
        }


@dataclass(frozen=True)
class EngineStatus:
    """Immutable view of engine health, published alongside the snapshot."""
    health: EngineHealth = EngineHealth.HEALTHY
    phase: CyclePhase = CyclePhase.IDLE
    congestion: CongestionState = CongestionState.NORMAL
    consecutive_failures: int = 0
    total_failures: int = 0
    persistence_failures: int = 0
    cycles_completed: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    provider_name: str = ""

    def is_degraded(self) -> bool:
        return self.health is EngineHealth.DEGRADED

    def is_stale(self, now: datetime, max_age_secs: float) -> bool:
        """True when the last successful fetch is older than ``max_age_secs``."""
        if self.last_success_at is None:
            return True
        return (to_utc(now) - self.last_success_at).total_seconds() > max_age_secs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "health": self.health.value,
            "phase": self.phase.value,
            "congestion": self.congestion.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "persistence_failures": self.persistence_failures,
            "cycles_completed": self.cycles_completed,
            "last_error": self.last_error,
            "last_success_at": (
                format_timestamp(self.last_success_at) if self.last_success_at else None
            ),
            "provider_name": self.provider_name,
        }


@dataclass(frozen=True)
class CycleResult:
    """Outcome of a single ingestion cycle."""
    ok: bool
    points_ingested: int = 0
    points_evicted: int = 0
    snapshot: Optional[FeeSnapshot] = None
    snapshot_emitted: bool = False
    error: Optional[Exception] = field(default=None, compare=False)
