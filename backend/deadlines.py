"""
Deadline planning for evaluation stages.

Given a review period and the configured day budgets, lays out the four stage
deadlines (self, manager, HR review, final confirmation) one after another
starting from "now". Which budget tier applies depends on how many days are
left until the period ends.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from db import utcnow
from models import Period, TimeMode

logger = logging.getLogger(__name__)

STAGE_FIELDS = (
    "self_eval_deadline",
    "manager_eval_deadline",
    "hr_review_deadline",
    "final_confirm_deadline",
)


class DeadlineDays(BaseModel):
    self_eval: int = Field(ge=1)
    manager_eval: int = Field(ge=1)
    hr_review: int = Field(ge=1)
    final_confirm: int = Field(ge=1)

    def budgets(self) -> List[int]:
        return [self.self_eval, self.manager_eval, self.hr_review, self.final_confirm]

    def total(self) -> int:
        return sum(self.budgets())


class TimeThreshold(BaseModel):
    standard: int = Field(ge=0)
    compressed: int = Field(ge=0)
    emergency: int = Field(ge=0)

    @model_validator(mode="after")
    def ordered(self):
        if not (self.standard >= self.compressed >= self.emergency):
            raise ValueError(
                "time_threshold must satisfy standard >= compressed >= emergency"
            )
        return self


class DeadlineRules(BaseModel):
    standard_days: DeadlineDays
    compressed_days: DeadlineDays
    minimum_days: DeadlineDays
    time_threshold: TimeThreshold
    # Signals that an external scheduled job should sweep overdue evaluations
    auto_process_overdue: bool = False

    @model_validator(mode="after")
    def never_below_minimum(self):
        minimum = self.minimum_days.budgets()
        for tier_name in ("standard_days", "compressed_days"):
            tier = getattr(self, tier_name).budgets()
            if any(days < floor for days, floor in zip(tier, minimum)):
                raise ValueError(f"{tier_name} cannot be shorter than minimum_days")
        return self


def default_deadline_rules() -> DeadlineRules:
    return DeadlineRules(
        standard_days=DeadlineDays(self_eval=7, manager_eval=4, hr_review=2, final_confirm=1),
        compressed_days=DeadlineDays(self_eval=5, manager_eval=3, hr_review=1, final_confirm=1),
        minimum_days=DeadlineDays(self_eval=2, manager_eval=2, hr_review=1, final_confirm=1),
        time_threshold=TimeThreshold(standard=14, compressed=7, emergency=6),
    )


@dataclass
class DeadlinePlan:
    period_end: datetime
    available_days: int
    time_mode: TimeMode
    is_valid: bool
    message: str = ""
    self_eval_deadline: Optional[datetime] = None
    manager_eval_deadline: Optional[datetime] = None
    hr_review_deadline: Optional[datetime] = None
    final_confirm_deadline: Optional[datetime] = None
    warnings: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def deadlines(self) -> dict:
        return {name: getattr(self, name) for name in STAGE_FIELDS}


def period_end(
    period: Period,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Midnight of the last calendar day of the period."""
    now = now or utcnow()
    period = Period(period)

    if period == Period.MONTHLY:
        if month is None:
            year, month = now.year, now.month
        last_day = calendar.monthrange(year, month)[1]
        return datetime(year, month, last_day)

    if period == Period.QUARTERLY:
        if quarter is None:
            year, quarter = now.year, (now.month - 1) // 3 + 1
        end_month = quarter * 3
        last_day = calendar.monthrange(year, end_month)[1]
        return datetime(year, end_month, last_day)

    return datetime(year, 12, 31)


def available_days(end: datetime, now: datetime) -> int:
    # Truncates toward zero, so a period that ended today reads as 0
    return int((end - now).total_seconds() / 86400)


def _lay_out(start: datetime, days: DeadlineDays) -> List[datetime]:
    deadlines = []
    boundary = start
    for budget in days.budgets():
        boundary = boundary + timedelta(days=budget)
        deadlines.append(boundary)
    return deadlines


def plan_deadlines(
    rules: DeadlineRules,
    period: Period,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DeadlinePlan:
    """
    Pick a budget tier from the days left in the period and lay out deadlines.

    - available >= standard threshold: standard_days
    - available >= compressed threshold: compressed_days
    - available >= emergency threshold: minimum_days, emergency mode
    - otherwise the plan is invalid; deadlines are still laid out on
      minimum_days so the caller can decide to go ahead anyway
    """
    now = now or utcnow()
    end = period_end(period, year, month, quarter, now=now)
    days_left = available_days(end, now)
    threshold = rules.time_threshold

    is_valid = True
    message = ""
    if days_left >= threshold.standard:
        mode, days = TimeMode.STANDARD, rules.standard_days
    elif days_left >= threshold.compressed:
        mode, days = TimeMode.COMPRESSED, rules.compressed_days
        message = (
            f"Only {days_left} days left in the period; using the compressed schedule."
        )
    elif days_left >= threshold.emergency:
        mode, days = TimeMode.EMERGENCY, rules.minimum_days
        message = (
            f"Only {days_left} days left in the period; using the minimum schedule."
        )
    else:
        mode, days = TimeMode.EMERGENCY, rules.minimum_days
        is_valid = False
        message = (
            f"Not enough time: {days_left} days left, at least "
            f"{threshold.emergency} needed. Consider moving this evaluation to "
            f"the next period."
        )

    deadlines = _lay_out(now, days)
    if is_valid and deadlines[-1] > end:
        message = (message + " " if message else "") + (
            "The final confirmation deadline falls after the period end."
        )

    plan = DeadlinePlan(
        period_end=end,
        available_days=days_left,
        time_mode=mode,
        is_valid=is_valid,
        message=message,
        **dict(zip(STAGE_FIELDS, deadlines)),
    )
    logger.debug(
        "Planned %s deadlines for %s %s (%d days available, valid=%s)",
        mode.value,
        period,
        year,
        days_left,
        is_valid,
    )
    return plan


def plan_custom_deadlines(
    period: Period,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    self_eval_deadline: Optional[datetime] = None,
    manager_eval_deadline: Optional[datetime] = None,
    hr_review_deadline: Optional[datetime] = None,
    final_confirm_deadline: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DeadlinePlan:
    """
    Accept a caller-supplied deadline set.

    All four deadlines are required. Chronological order across stages is not
    enforced; out-of-order sets are accepted and reported in ``warnings``.
    """
    now = now or utcnow()
    end = period_end(period, year, month, quarter, now=now)
    supplied = [
        self_eval_deadline,
        manager_eval_deadline,
        hr_review_deadline,
        final_confirm_deadline,
    ]
    plan = DeadlinePlan(
        period_end=end,
        available_days=available_days(end, now),
        time_mode=TimeMode.CUSTOM,
        is_valid=True,
        **dict(zip(STAGE_FIELDS, supplied)),
    )

    missing = [name for name, value in zip(STAGE_FIELDS, supplied) if value is None]
    if missing:
        plan.is_valid = False
        plan.missing = missing
        plan.message = "Custom deadlines require all four stages; missing: " + ", ".join(missing)
        return plan

    for (earlier_name, earlier), (later_name, later) in zip(
        zip(STAGE_FIELDS, supplied), zip(STAGE_FIELDS[1:], supplied[1:])
    ):
        if earlier > later:
            plan.warnings.append(f"{earlier_name} is later than {later_name}")
    if plan.warnings:
        plan.message = "Deadlines are out of order: " + "; ".join(plan.warnings)
        logger.warning("Accepted out-of-order custom deadlines: %s", plan.message)
    return plan


def is_overdue(deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if deadline is None:
        return False
    return (now or utcnow()) > deadline


def remaining_days(deadline: Optional[datetime], now: Optional[datetime] = None) -> int:
    if deadline is None:
        return 0
    remaining = (deadline - (now or utcnow())).total_seconds() / 86400
    return max(int(remaining), 0)
