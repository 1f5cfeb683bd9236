"""Fee insights engine: scheduled fetch, aggregation and snapshot publication."""

import dataclasses
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .alerts import AlertManager
from .calculator import RollingAverageCalculator
from .config import InsightsConfig
from .detector import CongestionDetector
from .errors import AppError, ErrorKind, ProviderError
from .logging import get_logger
from .provider import FeeDataProvider
from .storage import FeeStore
from .tracker import ExtremesTracker
from .types import (
    CyclePhase,
    CycleResult,
    EngineHealth,
    EngineStatus,
    FeeDataPoint,
    FeeSnapshot,
    ProviderMetadata,
    SnapshotPolicy,
)
from .window import FeeWindow

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeeInsightsEngine:
    """
    Periodically pulls fee samples and publishes an immutable snapshot.

    The ingestion loop is the only writer of the window, aggregates,
    detector and published values. Readers call ``current_snapshot()`` and
    ``status()`` from any thread; both return immutable objects that are
    replaced whole, never mutated, so a reader sees either the previous
    cycle's values or the new ones.

    In-memory state is authoritative for the current snapshot; the store is
    authoritative for history. A snapshot is published before it is
    persisted, and storage failures never fail a cycle.
    """

    def __init__(
        self,
        provider: FeeDataProvider,
        config: InsightsConfig,
        store: Optional[FeeStore] = None,
        alert_manager: Optional[AlertManager] = None,
        clock: Callable[[], datetime] = None,
    ):
        """
        Initialize engine.

        Args:
            provider: Source of fee samples
            config: Engine settings (validated here)
            store: Optional append-only history store
            alert_manager: Optional webhook alerts on state transitions
            clock: Returns the current aware UTC time (injectable for tests)

        Raises:
            ConfigError: If the configuration is invalid
        """
        config.validate()
        self.provider = provider
        self.config = config
        self.store = store
        self.alert_manager = alert_manager
        self._clock = clock or _utcnow

        self.calculator = RollingAverageCalculator()
        self.tracker = ExtremesTracker()
        self.window = FeeWindow(
            self.calculator,
            self.tracker,
            max_points=config.window_max_points,
            max_age_secs=config.window_max_age_secs,
        )
        self.detector = CongestionDetector(config.thresholds)
        self._metadata = provider.get_metadata()

        # Published values, swapped whole under _publish_lock
        self._publish_lock = threading.Lock()
        self._snapshot: Optional[FeeSnapshot] = None
        self._status = EngineStatus(provider_name=provider.provider_name())

        # Serializes cycles between the loop thread and direct run_cycle() calls
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- readers ----------

    def current_snapshot(self) -> Optional[FeeSnapshot]:
        """Latest published snapshot (None until the first one)."""
        with self._publish_lock:
            return self._snapshot

    def status(self) -> EngineStatus:
        with self._publish_lock:
            return self._status

    def is_healthy(self) -> bool:
        return not self.status().is_degraded()

    def provider_metadata(self) -> ProviderMetadata:
        return self._metadata

    def provider_health(self) -> bool:
        """Pass-through of the provider's own health check."""
        try:
            self.provider.health_check()
        except ProviderError as e:
            logger.warning(f"Provider {self.provider.provider_name()} health check failed: {e}")
            return False
        return True

    # ---------- publication ----------

    def _update_status(self, **changes) -> EngineStatus:
        with self._publish_lock:
            self._status = dataclasses.replace(self._status, **changes)
            return self._status

    def _publish(self, snapshot: Optional[FeeSnapshot], **status_changes) -> EngineStatus:
        with self._publish_lock:
            if snapshot is not None:
                self._snapshot = snapshot
            self._status = dataclasses.replace(self._status, **status_changes)
            return self._status

    # ---------- cycle ----------

    def run_cycle(self) -> CycleResult:
        """
        Run one fetch → ingest → recompute → snapshot cycle.

        Never raises for provider failures; they are counted and reported in
        the returned result and in ``status()``.
        """
        with self._cycle_lock:
            return self._run_cycle()

    def _run_cycle(self) -> CycleResult:
        self._update_status(phase=CyclePhase.FETCHING)
        try:
            points = self.provider.fetch_latest_fees()
        except ProviderError as e:
            return self._record_failure(e)
        except Exception as e:
            # Providers must only raise ProviderError; contain anything else to this cycle
            logger.error(f"Provider {self.provider.provider_name()} raised unexpected error: {e}", exc_info=True)
            return self._record_failure(AppError(ErrorKind.UNKNOWN, str(e)))

        now = self._clock()
        was_degraded = self.status().is_degraded()

        self._update_status(phase=CyclePhase.INGESTING)
        evicted = self.window.ingest(points)

        self._update_status(phase=CyclePhase.RECOMPUTING)
        average = self.calculator.average()
        min_fee = self.tracker.min()
        max_fee = self.tracker.max()
        congestion = self.detector.evaluate(average, min_fee, max_fee)

        self._update_status(phase=CyclePhase.SNAPSHOTTING)
        candidate = FeeSnapshot(
            base_fee=str(self.config.base_fee),
            min_fee=str(min_fee),
            max_fee=str(max_fee),
            avg_fee=str(average),
            captured_at=now,
            sample_count=len(self.window),
            congestion=congestion,
        )
        previous = self.current_snapshot()
        emit = (
            self.config.snapshot_policy is SnapshotPolicy.ALWAYS
            or not candidate.same_values(previous)
            or previous.congestion is not congestion
        )

        status = self._publish(
            candidate if emit else None,
            phase=CyclePhase.IDLE,
            health=EngineHealth.HEALTHY,
            congestion=congestion,
            consecutive_failures=0,
            cycles_completed=self._status.cycles_completed + 1,
            last_success_at=now,
        )
        if was_degraded:
            logger.info(f"Provider {self.provider.provider_name()} recovered, engine healthy again")

        logger.debug(
            f"Cycle: +{len(points)} -{len(evicted)} pts (n={len(self.window)}) "
            f"avg={average} min={min_fee} max={max_fee} [{congestion.value}]"
            f"{'' if emit else ' (unchanged, snapshot skipped)'}"
        )

        self._persist(points, candidate if emit else None)
        self._notify(candidate if emit else None, status, now)

        return CycleResult(
            ok=True,
            points_ingested=len(points),
            points_evicted=len(evicted),
            snapshot=candidate if emit else previous,
            snapshot_emitted=emit,
        )

    def _record_failure(self, error: Exception) -> CycleResult:
        """Count a failed fetch; window, aggregates and snapshot are left untouched."""
        with self._publish_lock:
            consecutive = self._status.consecutive_failures + 1
            degraded = consecutive >= self.config.failure_threshold
            was_degraded = self._status.is_degraded()
            self._status = dataclasses.replace(
                self._status,
                phase=CyclePhase.DEGRADED,
                health=EngineHealth.DEGRADED if degraded else EngineHealth.HEALTHY,
                consecutive_failures=consecutive,
                total_failures=self._status.total_failures + 1,
                last_error=str(error),
            )
            status = self._status

        logger.warning(
            f"Fetch from {self.provider.provider_name()} failed "
            f"({consecutive} consecutive): {error}"
        )
        if degraded and not was_degraded:
            logger.error(
                f"Engine degraded after {consecutive} consecutive fetch failures; "
                f"serving last known snapshot"
            )
        self._notify(None, status, self._clock())
        return CycleResult(ok=False, snapshot=self.current_snapshot(), error=error)

    def _persist(self, points: List[FeeDataPoint], snapshot: Optional[FeeSnapshot]):
        """Best-effort history append; failures are logged and counted."""
        if self.store is None:
            return
        try:
            self.store.append_points(points)
            if snapshot is not None:
                self.store.append_snapshot(snapshot)
        except (sqlite3.Error, OSError) as e:
            self._record_persistence_failure(f"Failed to persist fee history: {e}")
        except Exception as e:
            self._record_persistence_failure(f"Unexpected error from {type(self.store).__name__}: {e}")

    def _record_persistence_failure(self, message: str):
        status = self._update_status(persistence_failures=self._status.persistence_failures + 1)
        logger.error(f"{message} ({status.persistence_failures} failures so far)", exc_info=True)

    def _notify(self, snapshot: Optional[FeeSnapshot], status: EngineStatus, now: datetime):
        if self.alert_manager is None:
            return
        if snapshot is not None:
            self.alert_manager.maybe_alert_congestion(snapshot, now)
        self.alert_manager.maybe_alert_health(status, now)

    # ---------- scheduling ----------

    def trigger(self):
        """Request a cycle now; requests made while a cycle runs collapse into one."""
        self._wake_event.set()

    def run_forever(self):
        """
        Run the fixed-interval loop in the calling thread until ``stop()``.

        A cycle that overruns the interval is followed immediately by the
        next one; ticks are never queued up.
        """
        interval = self.config.poll_interval_secs
        logger.info(
            f"Starting fee insights loop (provider={self.provider.provider_name()}, "
            f"interval={interval}s)"
        )
        while not self._stop_event.is_set():
            self._wake_event.clear()
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error in fee insights loop: {e}", exc_info=True)

            if self._stop_event.is_set():
                break
            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                self._wake_event.wait(remaining)
        logger.info("Fee insights loop stopped")

    def start(self):
        """Start the loop on a dedicated daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("engine loop already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="fee-insights-loop", daemon=True)
        self._thread.start()

    def stop(self, grace_secs: float = None) -> bool:
        """
        Signal shutdown and wait for the in-flight cycle to finish.

        Args:
            grace_secs: Maximum seconds to wait (defaults to config.shutdown_grace_secs)

        Returns:
            True if the loop exited within the grace period
        """
        grace = self.config.shutdown_grace_secs if grace_secs is None else grace_secs
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is None:
            return True
        self._thread.join(grace)
        if self._thread.is_alive():
            logger.warning(f"Fee insights loop did not stop within {grace}s")
            return False
        self._thread = None
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
