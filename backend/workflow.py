"""
Evaluation lifecycle.

    pending --self--> self_evaluated --manager--> manager_evaluated
        --hr--> pending_confirm --confirm--> completed

An employee without a direct manager skips ``self_evaluated``: the self
stage lands directly on ``manager_evaluated``. Nothing moves backward and
``completed`` accepts no further transitions.

Every transition runs three guards, first failure wins:

1. staleness: evaluations older than ``STALE_AFTER_DAYS`` need HR
2. actor and status: reported as one generic denial
3. completeness: every row must carry the field the stage relies on

and then, in the same unit of work, recomputes ``total_score`` and writes
the new status. The confirm stage also backfills the final scores.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import access
import deadlines
import models
import notifications
from config import STALE_AFTER_DAYS
from db import atomic, utcnow
from errors import (
    AuthorizationError,
    CompletenessError,
    StalenessError,
    StateMismatchError,
    TransitionDeniedError,
    ValidationError,
)
from models import Stage, Status
from scoring import compute_total, load_scores, lock_evaluation, set_final_score

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    stage: Stage
    source: Status
    target: Status
    allowed: Callable[[models.Employee, models.Evaluation], bool]


TRANSITIONS: Dict[Stage, Transition] = {
    Stage.SELF: Transition(
        Stage.SELF,
        Status.PENDING,
        Status.SELF_EVALUATED,
        access.is_evaluated_employee,
    ),
    Stage.MANAGER: Transition(
        Stage.MANAGER,
        Status.SELF_EVALUATED,
        Status.MANAGER_EVALUATED,
        lambda actor, evaluation: access.is_direct_manager(actor, evaluation.employee),
    ),
    Stage.HR: Transition(
        Stage.HR,
        Status.MANAGER_EVALUATED,
        Status.PENDING_CONFIRM,
        lambda actor, evaluation: access.is_hr(actor),
    ),
    Stage.CONFIRM: Transition(
        Stage.CONFIRM,
        Status.PENDING_CONFIRM,
        Status.COMPLETED,
        access.is_evaluated_employee,
    ),
}


@dataclass(frozen=True)
class StatusView:
    """What a status means for readers: next stage, shown score, live deadline."""

    awaiting: Optional[Stage]
    display_field: str
    deadline_field: Optional[str]


STATUS_VIEWS: Dict[Status, StatusView] = {
    Status.PENDING: StatusView(Stage.SELF, "self_score", "self_eval_deadline"),
    Status.SELF_EVALUATED: StatusView(Stage.MANAGER, "self_score", "manager_eval_deadline"),
    Status.MANAGER_EVALUATED: StatusView(Stage.HR, "manager_score", "hr_review_deadline"),
    # Final scores fall back to HR/manager scores until confirmation
    Status.PENDING_CONFIRM: StatusView(Stage.CONFIRM, "final_score", "final_confirm_deadline"),
    Status.COMPLETED: StatusView(None, "final_score", None),
}


def current_deadline(evaluation: models.Evaluation) -> Optional[datetime]:
    field = STATUS_VIEWS[evaluation.status].deadline_field
    return getattr(evaluation, field) if field else None


def is_overdue(evaluation: models.Evaluation, now: Optional[datetime] = None) -> bool:
    """True when the deadline of the stage being waited on has passed."""
    return deadlines.is_overdue(current_deadline(evaluation), now)


def _check_staleness(evaluation: models.Evaluation, now: datetime) -> None:
    if now - evaluation.created_at > timedelta(days=STALE_AFTER_DAYS):
        raise StalenessError(
            f"Evaluation is older than {STALE_AFTER_DAYS} days; HR must intervene.",
            created_at=evaluation.created_at.isoformat(),
        )


def _check_actor_and_status(
    transition: Transition, evaluation: models.Evaluation, actor: models.Employee
) -> None:
    try:
        if evaluation.status != transition.source:
            raise StateMismatchError(
                f"expected {transition.source.value}, found {evaluation.status.value}"
            )
        if transition.stage == Stage.CONFIRM and evaluation.has_objection:
            raise StateMismatchError("an objection is waiting for HR")
        if not transition.allowed(actor, evaluation):
            raise AuthorizationError(
                f"employee {actor.id} may not run stage {transition.stage.value}"
            )
    except (StateMismatchError, AuthorizationError) as exc:
        logger.warning(
            "Transition %s on evaluation %s denied: %s",
            transition.stage.value,
            evaluation.id,
            exc.message,
        )
        raise TransitionDeniedError(exc) from exc


def _missing_rows(stage: Stage, scores: List[models.KPIScore]) -> List[models.KPIScore]:
    if stage == Stage.SELF:
        return [s for s in scores if s.self_score is None]
    if stage == Stage.MANAGER:
        return [s for s in scores if s.manager_score is None]
    # HR review accepts a final score, a rule-blended HR score or the manager score
    return [
        s
        for s in scores
        if s.final_score is None and s.hr_score is None and s.manager_score is None
    ]


def _check_completeness(stage: Stage, scores: List[models.KPIScore]) -> None:
    if stage == Stage.CONFIRM:
        if any(s.final_score is not None for s in scores):
            raise CompletenessError(
                "Final scores are already confirmed.", already_confirmed=True
            )
        return

    missing = _missing_rows(stage, scores)
    if missing:
        first = min(missing, key=lambda s: (s.item.order, s.id))
        raise CompletenessError(
            f"{len(missing)} item(s) still need a score.",
            missing_count=len(missing),
            first_missing={"score_id": first.id, "item_id": first.item_id},
        )


def _backfill_final_scores(scores: List[models.KPIScore]) -> None:
    for score in scores:
        if score.final_score is not None:
            continue
        for value in (score.hr_score, score.manager_score, score.self_score):
            if value is not None:
                set_final_score(score, value)
                break


def transition_stage(
    db: Session,
    evaluation_id: int,
    actor: models.Employee,
    stage,
    now: Optional[datetime] = None,
) -> models.Evaluation:
    """Complete ``stage`` on an evaluation and advance its status."""
    try:
        stage = Stage(stage)
    except ValueError:
        raise ValidationError(f"Unknown stage {stage!r}.") from None
    now = now or utcnow()
    transition = TRANSITIONS[stage]

    with atomic(db):
        evaluation = lock_evaluation(db, evaluation_id)
        _check_staleness(evaluation, now)
        _check_actor_and_status(transition, evaluation, actor)

        scores = load_scores(db, evaluation.id)
        _check_completeness(stage, scores)

        target = transition.target
        if stage == Stage.SELF and evaluation.employee.manager_id is None:
            target = Status.MANAGER_EVALUATED

        if stage == Stage.CONFIRM:
            _backfill_final_scores(scores)

        # An HR-adjusted total (objection handled) survives confirmation
        if not (stage == Stage.CONFIRM and evaluation.final_comment):
            evaluation.total_score = compute_total(scores, stage)

        previous = evaluation.status
        evaluation.status = target

    logger.info(
        "Evaluation %s moved %s -> %s by employee %s (total %.2f)",
        evaluation.id,
        previous.value,
        target.value,
        actor.id,
        evaluation.total_score,
    )
    notifications.notify_status(db, evaluation)
    return evaluation
