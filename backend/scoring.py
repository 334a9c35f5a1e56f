"""
Per-item score writes and the evaluation total.

Scores are written by the people the current status waits on: the employee
while the evaluation is pending, the direct manager once the self evaluation
is submitted. Final scores are only written by the confirm transition.
"""

import logging
import math
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

import access
import models
from db import atomic, utcnow
from errors import (
    AuthorizationError,
    NotFoundError,
    StateMismatchError,
    ValidationError,
)
from models import Stage, Status

logger = logging.getLogger(__name__)


def validate_score(value, max_score: float) -> float:
    """Return ``value`` as a float in ``[0, max_score]`` or raise ValidationError."""
    if value is None or isinstance(value, bool):
        raise ValidationError("Score is required.")
    if isinstance(value, str) and not value.strip():
        raise ValidationError("Score is required.")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Score {value!r} is not a number.") from None
    if math.isnan(value) or math.isinf(value):
        raise ValidationError("Score must be a finite number.")
    if value < 0 or value > max_score:
        raise ValidationError(
            f"Score must be between 0 and {max_score:g}.",
            max_score=max_score,
        )
    return value


def stage_value(score: models.KPIScore, stage: Stage) -> Optional[float]:
    """The value a row contributes to the total after ``stage``."""
    stage = Stage(stage)
    if stage == Stage.SELF:
        return score.self_score
    if stage == Stage.MANAGER:
        return score.manager_score
    for value in (score.final_score, score.hr_score, score.manager_score):
        if value is not None:
            return value
    return None


def compute_total(scores: Iterable[models.KPIScore], stage: Stage) -> float:
    """Sum of the stage's field over all rows; missing values count as 0."""
    return sum(stage_value(score, stage) or 0.0 for score in scores)


def lock_evaluation(db: Session, evaluation_id: int) -> models.Evaluation:
    """
    Re-read an evaluation under a row lock (where the backend supports one).
    populate_existing makes sure we validate against the stored status, not a
    stale copy from the identity map.
    """
    evaluation = (
        db.query(models.Evaluation)
        .filter(models.Evaluation.id == evaluation_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if evaluation is None:
        raise NotFoundError(f"Evaluation with id {evaluation_id} not found")
    return evaluation


def load_scores(db: Session, evaluation_id: int) -> List[models.KPIScore]:
    return (
        db.query(models.KPIScore)
        .filter(models.KPIScore.evaluation_id == evaluation_id)
        .order_by(models.KPIScore.id)
        .populate_existing()
        .all()
    )


def _load_score(db: Session, score_id: int):
    score = db.query(models.KPIScore).filter(models.KPIScore.id == score_id).first()
    if score is None:
        raise NotFoundError(f"Score with id {score_id} not found")
    evaluation = lock_evaluation(db, score.evaluation_id)
    return score, evaluation


def _touch(evaluation: models.Evaluation) -> None:
    # Bumps the evaluation version so a racing transition fails on flush
    evaluation.updated_at = utcnow()


def set_self_score(
    db: Session,
    score_id: int,
    actor: models.Employee,
    value,
    comment: Optional[str] = None,
) -> models.KPIScore:
    with atomic(db):
        score, evaluation = _load_score(db, score_id)
        if not access.is_evaluated_employee(actor, evaluation):
            raise AuthorizationError("Only the evaluated employee can self-score.")
        if evaluation.status != Status.PENDING:
            raise StateMismatchError(
                "Self scores can only be changed while the evaluation is pending.",
                status=evaluation.status.value,
            )
        score.self_score = validate_score(value, score.item.max_score)
        score.self_comment = comment
        _touch(evaluation)

    logger.info("Self score %s set on evaluation %s", score_id, evaluation.id)
    return score


def set_manager_score(
    db: Session,
    score_id: int,
    actor: models.Employee,
    value,
    comment: Optional[str] = None,
) -> models.KPIScore:
    with atomic(db):
        score, evaluation = _load_score(db, score_id)
        if not access.is_direct_manager(actor, evaluation.employee):
            raise AuthorizationError("Only the employee's direct manager can score.")
        if evaluation.status != Status.SELF_EVALUATED:
            raise StateMismatchError(
                "Manager scores can only be changed after the self evaluation.",
                status=evaluation.status.value,
            )
        score.manager_score = validate_score(value, score.item.max_score)
        score.manager_comment = comment
        _touch(evaluation)

    logger.info("Manager score %s set on evaluation %s", score_id, evaluation.id)
    return score


def set_final_score(
    score: models.KPIScore, value, comment: Optional[str] = None
) -> models.KPIScore:
    """
    Write the authoritative final score. Only the confirm transition calls
    this, inside its own unit of work; a final score is never overwritten.
    """
    if score.final_score is not None:
        raise ValidationError(
            "Final score is already set and cannot change.", score_id=score.id
        )
    score.final_score = validate_score(value, score.item.max_score)
    if comment is not None:
        score.final_comment = comment
    return score


def set_hr_score(
    db: Session,
    score_id: int,
    actor: models.Employee,
    value,
    comment: Optional[str] = None,
) -> models.KPIScore:
    """
    HR adjustment while the evaluation waits for HR review. Needed for
    employees without a manager, whose rows carry no manager score.
    """
    with atomic(db):
        score, evaluation = _load_score(db, score_id)
        if not access.is_hr(actor):
            raise AuthorizationError("Only HR can set HR scores.")
        if evaluation.status != Status.MANAGER_EVALUATED:
            raise StateMismatchError(
                "HR scores can only be changed during HR review.",
                status=evaluation.status.value,
            )
        score.hr_score = validate_score(value, score.item.max_score)
        score.hr_comment = comment
        _touch(evaluation)

    logger.info("HR score %s set on evaluation %s", score_id, evaluation.id)
    return score
