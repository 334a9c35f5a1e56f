"""
Weight rules for blending self, invited-peer and manager scores.

The rule has two weight sets:

- ``no_invitation``: self + superior, used when nobody else scored
- ``with_invitation.employee``: self + invited superior + superior, used once
  at least one share has been completed

Each set must add up to 100 before it is accepted. The resolver never guesses:
a missing or disabled rule is reported as not configured.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, field_validator, model_validator

from errors import RuleNotConfiguredError

WEIGHT_TOLERANCE = 0.001


def _check_percentage(value: float) -> float:
    if value is None or math.isnan(value) or math.isinf(value):
        raise ValueError("weight must be a finite number")
    if value < 0 or value > 100:
        raise ValueError("weight must be between 0 and 100")
    return value


def _check_sum(label: str, values: Iterable[float]) -> None:
    total = sum(values)
    if abs(total - 100) > WEIGHT_TOLERANCE:
        raise ValueError(f"{label} weights must add up to 100, got {total:.2f}")


class NoInvitationWeights(BaseModel):
    self_weight: float
    superior_weight: float

    @field_validator("self_weight", "superior_weight")
    @classmethod
    def percentage_range(cls, value):
        return _check_percentage(value)

    @model_validator(mode="after")
    def sums_to_hundred(self):
        _check_sum("no_invitation", (self.self_weight, self.superior_weight))
        return self


class EmployeeInvitationWeights(BaseModel):
    self_weight: float
    invite_superior_weight: float
    superior_weight: float

    @field_validator("self_weight", "invite_superior_weight", "superior_weight")
    @classmethod
    def percentage_range(cls, value):
        return _check_percentage(value)

    @model_validator(mode="after")
    def sums_to_hundred(self):
        _check_sum(
            "with_invitation.employee",
            (self.self_weight, self.invite_superior_weight, self.superior_weight),
        )
        return self


class WithInvitationWeights(BaseModel):
    employee: EmployeeInvitationWeights


class PerformanceRule(BaseModel):
    no_invitation: NoInvitationWeights
    with_invitation: WithInvitationWeights
    enabled: bool = False


def default_performance_rule() -> PerformanceRule:
    return PerformanceRule(
        no_invitation=NoInvitationWeights(self_weight=10, superior_weight=90),
        with_invitation=WithInvitationWeights(
            employee=EmployeeInvitationWeights(
                self_weight=10, invite_superior_weight=30, superior_weight=60
            )
        ),
        enabled=False,
    )


@dataclass(frozen=True)
class WeightSet:
    scenario: str
    self_weight: float
    invite_weight: float
    superior_weight: float


SCENARIO_NO_INVITATION = "no_invitation"
SCENARIO_EMPLOYEE_INVITATION = "employee_invitation"


def resolve_weights(
    rule: Optional[PerformanceRule], has_completed_shares: bool
) -> WeightSet:
    """Return the weight set that applies to an evaluation."""
    if rule is None or not rule.enabled:
        raise RuleNotConfiguredError()

    if has_completed_shares:
        weights = rule.with_invitation.employee
        return WeightSet(
            scenario=SCENARIO_EMPLOYEE_INVITATION,
            self_weight=weights.self_weight,
            invite_weight=weights.invite_superior_weight,
            superior_weight=weights.superior_weight,
        )

    weights = rule.no_invitation
    return WeightSet(
        scenario=SCENARIO_NO_INVITATION,
        self_weight=weights.self_weight,
        invite_weight=0.0,
        superior_weight=weights.superior_weight,
    )


def weighted_average(
    components: Iterable[Tuple[float, Optional[float]]]
) -> Optional[float]:
    """
    Weighted average over ``(weight, value)`` pairs.

    Pairs with no value or a non-positive weight are dropped and the
    remaining weights are renormalised. Returns None when nothing is left.
    """
    present = [(w, v) for w, v in components if v is not None and w > 0]
    total_weight = sum(w for w, _ in present)
    if total_weight == 0:
        return None
    return sum((w / total_weight) * v for w, v in present)
