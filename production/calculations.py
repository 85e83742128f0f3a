"""
Hourly target and variance calculations for a sewing line.

Everything in this module is a pure function of a day's header constants and
the ordered achieved quantities submitted so far. Both the write path (one
hour saved) and the read path (dashboards re-deriving a whole table) go
through ``recompute_hourly_metrics`` so they always agree.

- TargetCalculator: base hourly target from manpower/SMV or the day target
- VarianceEngine: carried shortfall, dynamic target and variance per hour
- EfficiencyAggregator: hourly, cumulative and running-average efficiency
"""

import math
from dataclasses import dataclass, asdict
from typing import Iterable

MINUTES_PER_HOUR = 60


class InvalidSubmission(ValueError):
    """Raised when a submitted hour cannot be accepted as-is."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


def to_number_or_zero(value) -> float:
    """Coerce a possibly blank/garbage value to a finite float, else 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass(frozen=True)
class HeaderInputs:
    """Normalized header constants for one production user and day."""
    working_hour: float = 0.0
    manpower_present: float = 0.0
    smv: float = 0.0
    plan_efficiency: float = 0.0  # percentage, e.g. 90 for 90%
    today_target: float = 0.0

    @classmethod
    def from_values(cls, working_hour=None, manpower_present=None, smv=None,
                    plan_efficiency=None, today_target=None) -> "HeaderInputs":
        return cls(
            working_hour=to_number_or_zero(working_hour),
            manpower_present=to_number_or_zero(manpower_present),
            smv=to_number_or_zero(smv),
            plan_efficiency=to_number_or_zero(plan_efficiency),
            today_target=to_number_or_zero(today_target),
        )

    @classmethod
    def from_header(cls, header) -> "HeaderInputs":
        """Build from any object exposing the header attributes (e.g. a ProductionHeader row)."""
        return cls.from_values(
            working_hour=getattr(header, "working_hour", None),
            manpower_present=getattr(header, "manpower_present", None),
            smv=getattr(header, "smv", None),
            plan_efficiency=getattr(header, "plan_efficiency", None),
            today_target=getattr(header, "today_target", None),
        )

    @property
    def has_capacity(self) -> bool:
        return self.manpower_present > 0 and self.smv > 0

    @property
    def effective_working_hours(self) -> int:
        """Number of hour slots in the day; at least one slot always exists."""
        return int(self.working_hour) if self.working_hour >= 1 else 1


class TargetCalculator:
    """Base hourly target for a day. Constant across all hours of that day."""

    @staticmethod
    def capacity_target(header: HeaderInputs) -> float:
        if not header.has_capacity:
            return 0.0
        return (header.manpower_present * MINUTES_PER_HOUR * (header.plan_efficiency / 100)) / header.smv

    @staticmethod
    def split_target(header: HeaderInputs) -> float:
        if header.working_hour <= 0:
            return 0.0
        return header.today_target / header.working_hour

    @classmethod
    def compute_base_target_per_hour(cls, header: HeaderInputs) -> float:
        """
        Capacity target (manpower x 60 x plan efficiency / SMV) when manpower
        and SMV are known, otherwise an even split of the day target.
        """
        return cls.capacity_target(header) or cls.split_target(header) or 0.0


@dataclass(frozen=True)
class VarianceStep:
    hour: int
    achieved_qty: float
    achieved_before: float
    shortfall: float
    dynamic_target: float
    variance_qty: float


class VarianceEngine:
    """Carry-forward shortfall recurrence over the ordered hour sequence."""

    @staticmethod
    def normalize_entries(entries) -> dict[int, float]:
        """
        Collapse ``(hour, achieved_qty)`` pairs into an ascending hour map.
        A later pair for the same hour replaces an earlier one.
        """
        by_hour: dict[int, float] = {}
        for hour, achieved_qty in entries:
            by_hour[int(hour)] = to_number_or_zero(achieved_qty)
        return dict(sorted(by_hour.items()))

    @staticmethod
    def shortfall(base: float, hour: int, achieved_before: float) -> float:
        """Deficit against the flat baseline through the previous hour. Never negative."""
        return max(0.0, base * (hour - 1) - achieved_before)

    @staticmethod
    def net_variance_to_date(base: float, hour: int, achieved_through: float) -> float:
        """Cumulative output minus the flat baseline through ``hour`` (may be negative)."""
        return achieved_through - base * hour

    @classmethod
    def run(cls, base: float, achieved_by_hour: dict[int, float]) -> list[VarianceStep]:
        """
        Single ascending pass over hours 1..max(submitted hour).

        Hours that were never submitted count as zero output for the prefix
        sum but produce no step.
        """
        steps = []
        achieved_before = 0.0
        last_hour = max(achieved_by_hour, default=0)

        for hour in range(1, last_hour + 1):
            achieved_qty = achieved_by_hour.get(hour)
            if achieved_qty is None:
                continue

            shortfall = cls.shortfall(base, hour, achieved_before)
            dynamic_target = base + shortfall
            steps.append(VarianceStep(
                hour=hour,
                achieved_qty=achieved_qty,
                achieved_before=achieved_before,
                shortfall=shortfall,
                dynamic_target=dynamic_target,
                variance_qty=achieved_qty - dynamic_target,
            ))
            achieved_before += achieved_qty

        return steps


@dataclass(frozen=True)
class EfficiencyStep:
    hour: int
    hourly_efficiency: float
    achieve_efficiency: float
    total_efficiency: float


class EfficiencyAggregator:
    """Hourly, cumulative (achieve) and running-average (total) efficiency."""

    @staticmethod
    def hourly_efficiency(header: HeaderInputs, achieved_qty: float) -> float:
        if not header.has_capacity:
            return 0.0
        return (achieved_qty * header.smv * 100) / (header.manpower_present * MINUTES_PER_HOUR)

    @staticmethod
    def achieve_efficiency(header: HeaderInputs, hour: int, achieved_through: float) -> float:
        if not header.has_capacity or hour <= 0:
            return 0.0
        return (achieved_through * header.smv * 100) / (header.manpower_present * MINUTES_PER_HOUR * hour)

    @classmethod
    def run(cls, header: HeaderInputs, achieved_by_hour: dict[int, float]) -> list[EfficiencyStep]:
        # Gap hours still occupy a slot in the running average.
        steps = []
        achieved_through = 0.0
        achieve_sum = 0.0
        last_hour = max(achieved_by_hour, default=0)

        for hour in range(1, last_hour + 1):
            achieved_qty = achieved_by_hour.get(hour, 0.0)
            achieved_through += achieved_qty
            achieve = cls.achieve_efficiency(header, hour, achieved_through)
            achieve_sum += achieve

            if hour in achieved_by_hour:
                steps.append(EfficiencyStep(
                    hour=hour,
                    hourly_efficiency=cls.hourly_efficiency(header, achieved_qty),
                    achieve_efficiency=achieve,
                    total_efficiency=achieve_sum / hour,
                ))

        return steps


@dataclass(frozen=True)
class HourlyMetrics:
    """Derived figures for one submitted hour."""
    hour: int
    achieved_qty: float
    base_target_per_hour: float
    shortfall: float
    dynamic_target: float
    variance_qty: float
    hourly_efficiency: float
    achieve_efficiency: float
    total_efficiency: float

    def derived_fields(self) -> dict[str, float]:
        """The fields cached on a stored hour record."""
        return {
            'base_target_per_hour': self.base_target_per_hour,
            'dynamic_target': self.dynamic_target,
            'variance_qty': self.variance_qty,
            'hourly_efficiency': self.hourly_efficiency,
            'achieve_efficiency': self.achieve_efficiency,
            'total_efficiency': self.total_efficiency,
        }

    def to_dict(self) -> dict:
        return asdict(self)


def recompute_hourly_metrics(header: HeaderInputs, entries) -> list[HourlyMetrics]:
    """
    Derive every submitted hour's metrics from scratch.

    Args:
        header: normalized header constants
        entries: iterable of ``(hour, achieved_qty)`` pairs in any order

    Returns:
        One HourlyMetrics per distinct submitted hour, ascending by hour.
    """
    achieved_by_hour = VarianceEngine.normalize_entries(entries)
    base = TargetCalculator.compute_base_target_per_hour(header)

    variance_steps = VarianceEngine.run(base, achieved_by_hour)
    efficiency_steps = EfficiencyAggregator.run(header, achieved_by_hour)

    return [
        HourlyMetrics(
            hour=variance.hour,
            achieved_qty=variance.achieved_qty,
            base_target_per_hour=base,
            shortfall=variance.shortfall,
            dynamic_target=variance.dynamic_target,
            variance_qty=variance.variance_qty,
            hourly_efficiency=efficiency.hourly_efficiency,
            achieve_efficiency=efficiency.achieve_efficiency,
            total_efficiency=efficiency.total_efficiency,
        )
        for variance, efficiency in zip(variance_steps, efficiency_steps)
    ]


def validate_submission(header: HeaderInputs, hour, achieved_qty) -> tuple[int, float]:
    """
    Check one hourly submission before it touches the store.

    Returns the hour as int and the quantity as float.

    Raises:
        InvalidSubmission: hour not an integer in [1, working hours], or
            quantity negative or non-finite
    """
    errors = []
    hour_number = None
    quantity = None

    if isinstance(hour, bool) or not isinstance(hour, (int, float)):
        errors.append("hour must be a positive integer")
    elif isinstance(hour, float) and not hour.is_integer():
        errors.append("hour must be a positive integer")
    else:
        # ints are range-checked as is; float() overflows on very large ones
        hour_number = int(hour)
        max_hour = header.effective_working_hours
        if not 1 <= hour_number <= max_hour:
            errors.append(f"hour must be between 1 and {max_hour}")

    try:
        quantity = float(achieved_qty)
    except (TypeError, ValueError, OverflowError):
        errors.append("achievedQty must be a number")
    else:
        if not math.isfinite(quantity) or quantity < 0:
            errors.append("achievedQty must be a non-negative number")

    if errors:
        raise InvalidSubmission(errors)

    return hour_number, quantity
