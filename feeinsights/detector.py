"""Congestion detection with hysteresis."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from .errors import ConfigError
from .logging import get_logger
from .types import CongestionState

logger = get_logger(__name__)

Number = Union[int, str, Decimal]


def _decimal(value: Number, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"{name} is not a number: {value!r}") from e


@dataclass(frozen=True)
class DetectorThresholds:
    """
    Congestion thresholds.

    The high threshold is ``absolute_ceiling`` when set, otherwise
    ``base_fee * avg_multiplier``. The low (exit) threshold sits
    ``hysteresis_margin`` below it, as a fraction of the high threshold.
    """
    base_fee: int
    avg_multiplier: Number = "2.0"
    hysteresis_margin: Number = "0.2"
    absolute_ceiling: Optional[int] = None
    max_fee_ceiling: Optional[int] = None
    enter_cycles: int = 1

    @property
    def high(self) -> Decimal:
        if self.absolute_ceiling is not None:
            return Decimal(self.absolute_ceiling)
        return Decimal(self.base_fee) * _decimal(self.avg_multiplier, "avg_multiplier")

    @property
    def low(self) -> Decimal:
        return self.high * (1 - _decimal(self.hysteresis_margin, "hysteresis_margin"))

    @property
    def max_fee_low(self) -> Optional[Decimal]:
        """Exit bound for the window maximum, the ceiling lowered by the same margin."""
        if self.max_fee_ceiling is None:
            return None
        return Decimal(self.max_fee_ceiling) * (1 - _decimal(self.hysteresis_margin, "hysteresis_margin"))

    def validate(self):
        """
        Raises:
            ConfigError: If any threshold is out of range
        """
        multiplier = _decimal(self.avg_multiplier, "avg_multiplier")
        margin = _decimal(self.hysteresis_margin, "hysteresis_margin")
        if self.base_fee < 0:
            raise ConfigError(f"base_fee must be non-negative, got {self.base_fee}")
        if self.absolute_ceiling is None and multiplier <= 0:
            raise ConfigError(f"avg_multiplier must be > 0, got {multiplier}")
        if self.absolute_ceiling is not None and self.absolute_ceiling <= 0:
            raise ConfigError(f"absolute_ceiling must be > 0, got {self.absolute_ceiling}")
        if self.max_fee_ceiling is not None and self.max_fee_ceiling <= 0:
            raise ConfigError(f"max_fee_ceiling must be > 0, got {self.max_fee_ceiling}")
        if not Decimal(0) <= margin < Decimal(1):
            raise ConfigError(f"hysteresis_margin must be in [0, 1), got {margin}")
        if self.enter_cycles < 1:
            raise ConfigError(f"enter_cycles must be >= 1, got {self.enter_cycles}")


class CongestionDetector:
    """
    Two-state congestion classifier.

    Enters CONGESTED after ``enter_cycles`` consecutive evaluations above the
    high threshold (average above ``high``, or window maximum above
    ``max_fee_ceiling``) and leaves it only once every entry signal is back
    below its hysteresis-lowered bound. Apart from its state flag and the
    above-threshold streak, the detector holds no memory of past inputs.
    """

    def __init__(self, thresholds: DetectorThresholds):
        thresholds.validate()
        self.thresholds = thresholds
        self._high = thresholds.high
        self._low = thresholds.low
        self._max_fee_low = thresholds.max_fee_low
        self.state = CongestionState.NORMAL
        self._streak = 0

    def _above_high(self, average: int, max_fee: int) -> bool:
        if average > self._high:
            return True
        ceiling = self.thresholds.max_fee_ceiling
        return ceiling is not None and max_fee > ceiling

    def _below_low(self, average: int, max_fee: int) -> bool:
        if average >= self._low:
            return False
        return self._max_fee_low is None or max_fee <= self._max_fee_low

    def evaluate(self, average: int, min_fee: int, max_fee: int) -> CongestionState:
        """
        Classify the current window.

        Args:
            average: Rolling average fee
            min_fee: Window minimum (reported for context)
            max_fee: Window maximum, checked against ``max_fee_ceiling``

        Returns:
            State after this evaluation
        """
        if self.state is CongestionState.NORMAL:
            if self._above_high(average, max_fee):
                self._streak += 1
                if self._streak >= self.thresholds.enter_cycles:
                    self.state = CongestionState.CONGESTED
                    logger.warning(
                        f"Congestion detected: avg={average} (high={self._high}) "
                        f"min={min_fee} max={max_fee}"
                    )
            else:
                self._streak = 0
        elif self._below_low(average, max_fee):
            self.state = CongestionState.NORMAL
            self._streak = 0
            logger.info(f"Congestion cleared: avg={average} (low={self._low}) max={max_fee}")

        return self.state

    def reset(self):
        self.state = CongestionState.NORMAL
        self._streak = 0
