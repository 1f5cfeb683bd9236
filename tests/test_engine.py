"""Tests for the fee insights engine."""

import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from feeinsights.alerts import AlertManager
from feeinsights.config import InsightsConfig
from feeinsights.engine import FeeInsightsEngine
from feeinsights.errors import (
    AppError,
    ConfigError,
    FormatError,
    NetworkError,
    RateLimitExceeded,
    ServiceUnavailable,
)
from feeinsights.mock_provider import MockFeeDataProvider
from feeinsights.provider import FeeDataProvider
from feeinsights.storage import FeeStore
from feeinsights.types import (
    CongestionState,
    CyclePhase,
    EngineHealth,
    FeeDataPoint,
    ProviderMetadata,
    SnapshotPolicy,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_point(fee: int, offset_secs: int = 0) -> FeeDataPoint:
    return FeeDataPoint(
        fee_amount=fee,
        timestamp=BASE_TIME + timedelta(seconds=offset_secs),
        transaction_hash=f"hash_{fee}_{offset_secs}",
        ledger_sequence=1000 + offset_secs,
    )


class StepClock:
    """Returns a time one second later on every call."""

    def __init__(self):
        self.now = BASE_TIME

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def make_config(**overrides) -> InsightsConfig:
    settings = {
        "poll_interval_secs": 0.01,
        "window_max_points": 3,
        "window_max_age_secs": None,
        "base_fee": 100,
        "congestion_avg_multiplier": "2",
        "hysteresis_margin": "0.25",
        "failure_threshold": 3,
        "shutdown_grace_secs": 5,
    }
    settings.update(overrides)
    return InsightsConfig(**settings)


def make_engine(provider, **overrides):
    store = overrides.pop("store", None)
    alert_manager = overrides.pop("alert_manager", None)
    return FeeInsightsEngine(
        provider,
        make_config(**overrides),
        store=store,
        alert_manager=alert_manager,
        clock=StepClock(),
    )


def test_no_snapshot_before_first_cycle():
    engine = make_engine(MockFeeDataProvider())
    assert engine.current_snapshot() is None
    assert engine.status().health is EngineHealth.HEALTHY
    assert engine.status().phase is CyclePhase.IDLE


def test_window_scenario_with_eviction():
    """[100, 200, 150] then 500 in a window of 3."""
    provider = MockFeeDataProvider().with_fees([make_point(100, 0), make_point(200, 1), make_point(150, 2)])
    engine = make_engine(provider)

    result = engine.run_cycle()
    assert result.ok
    assert result.points_ingested == 3
    snapshot = engine.current_snapshot()
    assert snapshot.avg_fee == "150"
    assert snapshot.min_fee == "100"
    assert snapshot.max_fee == "200"
    assert snapshot.base_fee == "100"
    assert snapshot.sample_count == 3

    provider.with_fees([make_point(500, 3)])
    result = engine.run_cycle()
    assert result.points_evicted == 1
    snapshot = engine.current_snapshot()
    assert snapshot.min_fee == "150"
    assert snapshot.max_fee == "500"
    assert snapshot.avg_fee == "283"


def test_failed_fetch_leaves_state_untouched():
    provider = MockFeeDataProvider().with_fees([make_point(100, 0), make_point(300, 1)])
    engine = make_engine(provider)
    engine.run_cycle()
    before = engine.current_snapshot()
    window_before = engine.window.points()

    provider.with_error(NetworkError("connection reset"))
    result = engine.run_cycle()

    assert not result.ok
    assert isinstance(result.error, NetworkError)
    assert engine.current_snapshot() is before
    assert engine.window.points() == window_before
    assert engine.calculator.average() == 200
    assert engine.tracker.min() == 100
    assert engine.tracker.max() == 300
    status = engine.status()
    assert status.phase is CyclePhase.DEGRADED
    assert status.consecutive_failures == 1
    assert status.health is EngineHealth.HEALTHY
    assert "connection reset" in status.last_error


def test_rate_limited_provider_degrades_after_threshold():
    provider = MockFeeDataProvider().with_fees([make_point(120, 0)])
    engine = make_engine(provider, failure_threshold=3)
    engine.run_cycle()
    good = engine.current_snapshot()

    provider.with_error(RateLimitExceeded())
    engine.run_cycle()
    engine.run_cycle()
    assert engine.status().health is EngineHealth.HEALTHY
    assert engine.is_healthy()

    engine.run_cycle()
    status = engine.status()
    assert status.health is EngineHealth.DEGRADED
    assert status.consecutive_failures == 3
    assert status.total_failures == 3
    assert engine.current_snapshot() is good

    # Keeps retrying on every cycle
    engine.run_cycle()
    assert provider.calls() == 5
    assert engine.status().consecutive_failures == 4


def test_recovery_resets_failures():
    provider = MockFeeDataProvider().with_error(ServiceUnavailable())
    engine = make_engine(provider, failure_threshold=2)
    engine.run_cycle()
    engine.run_cycle()
    assert engine.status().is_degraded()
    assert engine.current_snapshot() is None

    provider.with_error(None).with_fees([make_point(100, 0)])
    result = engine.run_cycle()
    assert result.ok
    status = engine.status()
    assert status.health is EngineHealth.HEALTHY
    assert status.phase is CyclePhase.IDLE
    assert status.consecutive_failures == 0
    assert status.total_failures == 2
    assert status.last_success_at is not None
    assert engine.current_snapshot().avg_fee == "100"


def test_unexpected_provider_exception_is_contained():
    provider = MagicMock(spec=FeeDataProvider)
    provider.provider_name.return_value = "Broken"
    provider.get_metadata.return_value = ProviderMetadata(False, 1, None, 1)
    provider.fetch_latest_fees.side_effect = KeyError("boom")

    engine = make_engine(provider)
    result = engine.run_cycle()
    assert not result.ok
    assert isinstance(result.error, AppError)
    assert engine.status().total_failures == 1


def test_zero_points_always_policy_resnapshots():
    provider = MockFeeDataProvider().with_fees([make_point(100, 0)])
    engine = make_engine(provider, snapshot_policy=SnapshotPolicy.ALWAYS)
    engine.run_cycle()
    first = engine.current_snapshot()

    provider.with_fees([])
    result = engine.run_cycle()
    second = engine.current_snapshot()
    assert result.snapshot_emitted
    assert second is not first
    assert second.same_values(first)
    assert second.captured_at > first.captured_at


def test_zero_points_on_change_policy_skips_snapshot():
    provider = MockFeeDataProvider().with_fees([make_point(100, 0)])
    engine = make_engine(provider, snapshot_policy=SnapshotPolicy.ON_CHANGE)
    engine.run_cycle()
    first = engine.current_snapshot()

    provider.with_fees([])
    result = engine.run_cycle()
    assert result.ok
    assert not result.snapshot_emitted
    assert engine.current_snapshot() is first

    provider.with_fees([make_point(400, 1)])
    result = engine.run_cycle()
    assert result.snapshot_emitted
    assert engine.current_snapshot().avg_fee == "250"


def test_on_change_policy_first_cycle_emits():
    engine = make_engine(MockFeeDataProvider(), snapshot_policy=SnapshotPolicy.ON_CHANGE)
    result = engine.run_cycle()
    assert result.snapshot_emitted
    snapshot = engine.current_snapshot()
    assert (snapshot.min_fee, snapshot.max_fee, snapshot.avg_fee) == ("0", "0", "0")


def test_congestion_flows_into_snapshot_and_status():
    provider = MockFeeDataProvider().with_fees([make_point(500, 0)])
    engine = make_engine(provider, window_max_points=1)
    engine.run_cycle()
    assert engine.current_snapshot().congestion is CongestionState.CONGESTED
    assert engine.status().congestion is CongestionState.CONGESTED

    # high=200, low=150: 160 keeps congestion, 140 clears it
    provider.with_fees([make_point(160, 1)])
    engine.run_cycle()
    assert engine.current_snapshot().congestion is CongestionState.CONGESTED
    provider.with_fees([make_point(140, 2)])
    engine.run_cycle()
    assert engine.current_snapshot().congestion is CongestionState.NORMAL


def test_persists_points_and_snapshots():
    store = FeeStore(backend="sqlite", db_path=":memory:")
    provider = MockFeeDataProvider().with_fees([make_point(100, 0), make_point(200, 1)])
    engine = make_engine(provider, store=store)
    engine.run_cycle()
    provider.with_error(NetworkError("down"))
    engine.run_cycle()

    assert store.count_points() == 2
    latest = store.latest_snapshot()
    assert latest.avg_fee == "150"
    assert latest.captured_at == engine.current_snapshot().captured_at
    store.close()


def test_persistence_failure_does_not_block_publication():
    store = MagicMock(spec=FeeStore)
    store.append_points.side_effect = sqlite3.OperationalError("database is locked")
    provider = MockFeeDataProvider().with_fees([make_point(100, 0)])
    engine = make_engine(provider, store=store)

    result = engine.run_cycle()
    assert result.ok
    assert engine.current_snapshot().avg_fee == "100"
    assert engine.status().persistence_failures == 1
    assert engine.status().consecutive_failures == 0


def test_unexpected_store_error_still_completes_cycle():
    store = MagicMock(spec=FeeStore)
    store.append_snapshot.side_effect = RuntimeError("store went away")
    alert_manager = AlertManager("", 0)
    provider = MockFeeDataProvider().with_fees([make_point(900, 0)])
    engine = make_engine(provider, store=store, window_max_points=1, alert_manager=alert_manager)

    result = engine.run_cycle()
    assert result.ok
    assert result.snapshot_emitted
    assert engine.current_snapshot().avg_fee == "900"
    assert engine.status().persistence_failures == 1
    # notification still runs after the failed write
    assert alert_manager.sent == 1


def test_alerts_on_congestion_and_health_changes():
    alert_manager = AlertManager("", 0)
    provider = MockFeeDataProvider().with_fees([make_point(900, 0)])
    engine = make_engine(provider, window_max_points=1, failure_threshold=1, alert_manager=alert_manager)

    engine.run_cycle()
    assert alert_manager.sent == 1  # congested

    provider.with_error(ServiceUnavailable())
    engine.run_cycle()
    assert alert_manager.sent == 2  # degraded

    provider.with_error(None).with_fees([make_point(900, 1)])
    engine.run_cycle()
    assert alert_manager.sent == 3  # healthy again, still congested


def test_invalid_config_is_fatal():
    with pytest.raises(ConfigError):
        make_engine(MockFeeDataProvider(), window_max_points=None, window_max_age_secs=None)
    with pytest.raises(ConfigError):
        make_engine(MockFeeDataProvider(), failure_threshold=0)
    with pytest.raises(ConfigError):
        make_engine(MockFeeDataProvider(), hysteresis_margin="2")


def test_provider_passthrough():
    provider = MockFeeDataProvider().with_healthy(False)
    engine = make_engine(provider)
    assert engine.provider_metadata().max_batch_size == 100
    assert engine.provider_health() is False
    provider.with_healthy(True)
    assert engine.provider_health() is True
    assert engine.status().provider_name == "MockHorizon"


def test_format_error_counts_as_failure():
    provider = MockFeeDataProvider().with_error(FormatError("unexpected payload"))
    engine = make_engine(provider)
    result = engine.run_cycle()
    assert not result.ok
    assert engine.status().total_failures == 1


def test_loop_runs_until_stopped():
    provider = MockFeeDataProvider().with_fees([make_point(100, 0)])
    engine = make_engine(provider, poll_interval_secs=0.01)
    engine.start()
    try:
        deadline = time.monotonic() + 5
        while provider.calls() < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert provider.calls() >= 3
        assert engine.is_running()
        with pytest.raises(RuntimeError):
            engine.start()
    finally:
        assert engine.stop(grace_secs=5)
    assert not engine.is_running()
    calls = provider.calls()
    time.sleep(0.05)
    assert provider.calls() == calls


def test_loop_survives_provider_failures():
    provider = MockFeeDataProvider().with_error(RateLimitExceeded())
    engine = make_engine(provider, poll_interval_secs=0.01, failure_threshold=2)
    engine.start()
    try:
        deadline = time.monotonic() + 5
        while provider.calls() < 4 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        engine.stop(grace_secs=5)
    assert provider.calls() >= 4
    assert engine.status().is_degraded()


class SlowProvider(MockFeeDataProvider):
    """Blocks each fetch until released, recording overlapping calls."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.entered = threading.Event()
        self.active = 0
        self.max_active = 0

    def fetch_latest_fees(self):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.entered.set()
        self.release.wait(5)
        self.active -= 1
        return super().fetch_latest_fees()


def test_triggers_during_cycle_coalesce_and_readers_do_not_block():
    provider = SlowProvider().with_fees([make_point(100, 0)])
    engine = make_engine(provider, poll_interval_secs=60)
    engine.start()
    try:
        assert provider.entered.wait(5)
        # Reads return immediately while the fetch is blocked
        assert engine.current_snapshot() is None
        assert engine.status().phase is CyclePhase.FETCHING

        for _ in range(10):
            engine.trigger()
        provider.entered.clear()
        provider.release.set()

        # The ten triggers collapse into exactly one follow-up cycle
        assert provider.entered.wait(5)
        deadline = time.monotonic() + 5
        while engine.status().cycles_completed < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.1)
        assert provider.calls() == 2
        assert provider.max_active == 1
    finally:
        provider.release.set()
        engine.stop(grace_secs=5)
    assert engine.current_snapshot().avg_fee == "100"


def test_stop_without_start():
    engine = make_engine(MockFeeDataProvider())
    assert engine.stop(grace_secs=0) is True
