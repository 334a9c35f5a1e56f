"""
Delegated scoring ("shares").

An evaluator (the employee's manager, or HR) can ask other people for their
opinion on an evaluation. Each delegate gets their own share with one empty
score per template item. Share scores never touch the evaluation's own rows;
they are only exposed through ``get_share_summary``.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

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
from models import ShareStatus
from scoring import validate_score

logger = logging.getLogger(__name__)


def effective_status(share: models.EvaluationShare, now: Optional[datetime] = None) -> ShareStatus:
    """Pending shares past their deadline read as expired (nothing enforces it)."""
    if (
        share.status == ShareStatus.PENDING
        and share.deadline is not None
        and (now or utcnow()) > share.deadline
    ):
        return ShareStatus.EXPIRED
    return share.status


def _get_evaluation(db: Session, evaluation_id: int) -> models.Evaluation:
    evaluation = (
        db.query(models.Evaluation).filter(models.Evaluation.id == evaluation_id).first()
    )
    if evaluation is None:
        raise NotFoundError(f"Evaluation with id {evaluation_id} not found")
    return evaluation


def _lock_share(db: Session, share_id: int) -> models.EvaluationShare:
    share = (
        db.query(models.EvaluationShare)
        .filter(models.EvaluationShare.id == share_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if share is None:
        raise NotFoundError(f"Share with id {share_id} not found")
    return share


def create_share(
    db: Session,
    evaluation_id: int,
    actor: models.Employee,
    delegate_ids: Iterable[int],
    message: Optional[str] = None,
    deadline: Optional[datetime] = None,
) -> List[models.EvaluationShare]:
    """One share per delegate, at any status (completed evaluations included)."""
    delegate_ids = list(dict.fromkeys(delegate_ids))

    with atomic(db):
        evaluation = _get_evaluation(db, evaluation_id)
        if not access.can_delegate(actor, evaluation):
            raise AuthorizationError("Only the manager or HR can share an evaluation.")
        if not delegate_ids:
            raise ValidationError("At least one delegate is required.")
        if evaluation.employee_id in delegate_ids:
            raise ValidationError("An evaluation cannot be shared with the evaluated employee.")

        found = {
            employee.id
            for employee in db.query(models.Employee)
            .filter(models.Employee.id.in_(delegate_ids))
            .all()
        }
        missing = [i for i in delegate_ids if i not in found]
        if missing:
            raise ValidationError("Some delegates do not exist.", missing_ids=missing)

        shares = []
        for delegate_id in delegate_ids:
            share = models.EvaluationShare(
                evaluation_id=evaluation.id,
                shared_to_id=delegate_id,
                shared_by_id=actor.id,
                status=ShareStatus.PENDING,
                message=message,
                deadline=deadline,
                scores=[
                    models.ShareScore(item_id=item.id)
                    for item in evaluation.template.items
                ],
            )
            db.add(share)
            shares.append(share)

    logger.info(
        "Evaluation %s shared by employee %s with %s",
        evaluation_id,
        actor.id,
        delegate_ids,
    )
    return shares


def get_share(db: Session, share_id: int, actor: models.Employee) -> models.EvaluationShare:
    share = db.query(models.EvaluationShare).filter(models.EvaluationShare.id == share_id).first()
    if share is None:
        raise NotFoundError(f"Share with id {share_id} not found")
    if actor.id not in (share.shared_to_id, share.shared_by_id) and not access.is_hr(actor):
        raise AuthorizationError("You cannot view this share.")
    return share


def update_share_score(
    db: Session,
    share_id: int,
    item_id: int,
    actor: models.Employee,
    value,
    comment: Optional[str] = None,
) -> models.ShareScore:
    with atomic(db):
        share = _lock_share(db, share_id)
        if share.shared_to_id != actor.id:
            raise AuthorizationError("Only the delegate can score this share.")
        if share.status != ShareStatus.PENDING:
            raise StateMismatchError(
                "This share has been submitted and can no longer change.",
                status=share.status.value,
            )
        score = (
            db.query(models.ShareScore)
            .filter(models.ShareScore.share_id == share.id, models.ShareScore.item_id == item_id)
            .first()
        )
        if score is None:
            raise NotFoundError(f"Item {item_id} is not part of share {share_id}")
        score.score = validate_score(value, score.item.max_score)
        score.comment = comment
        # A submit racing this write fails the share version check on flush
        share.updated_at = utcnow()

    return score


def submit_share(db: Session, share_id: int, actor: models.Employee) -> models.EvaluationShare:
    """pending -> completed, once. The parent evaluation is left alone."""
    with atomic(db):
        share = _lock_share(db, share_id)
        if share.shared_to_id != actor.id:
            raise AuthorizationError("Only the delegate can submit this share.")
        if share.status != ShareStatus.PENDING:
            raise StateMismatchError(
                "This share has already been submitted.", status=share.status.value
            )
        share.status = ShareStatus.COMPLETED
        share.updated_at = utcnow()

    logger.info("Share %s submitted by employee %s", share_id, actor.id)
    return share


def delete_share(db: Session, share_id: int, actor: models.Employee) -> None:
    with atomic(db):
        share = _lock_share(db, share_id)
        if share.shared_by_id != actor.id:
            raise AuthorizationError("Only the person who shared can withdraw it.")
        db.delete(share)

    logger.info("Share %s deleted by employee %s", share_id, actor.id)


def list_shares(
    db: Session, evaluation_id: int, actor: models.Employee
) -> List[models.EvaluationShare]:
    evaluation = _get_evaluation(db, evaluation_id)
    if not access.can_view_evaluation(actor, evaluation):
        raise AuthorizationError("You cannot view this evaluation.")
    return (
        db.query(models.EvaluationShare)
        .filter(models.EvaluationShare.evaluation_id == evaluation_id)
        .order_by(models.EvaluationShare.id)
        .all()
    )


def list_my_shares(db: Session, actor: models.Employee) -> List[models.EvaluationShare]:
    return (
        db.query(models.EvaluationShare)
        .filter(models.EvaluationShare.shared_to_id == actor.id)
        .order_by(models.EvaluationShare.created_at.desc(), models.EvaluationShare.id.desc())
        .all()
    )


def completed_share_averages(evaluation: models.Evaluation) -> Dict[int, float]:
    """item_id -> average score over completed shares (items nobody scored are absent)."""
    totals: Dict[int, List[float]] = {}
    for share in evaluation.shares:
        if share.status != ShareStatus.COMPLETED:
            continue
        for score in share.scores:
            if score.score is not None:
                totals.setdefault(score.item_id, []).append(score.score)
    return {item_id: sum(values) / len(values) for item_id, values in totals.items()}


def get_share_summary(
    db: Session, evaluation_id: int, actor: models.Employee
) -> List[dict]:
    """
    Per template item: average and count of completed share scores, plus the
    individual entries. Informational only.
    """
    evaluation = _get_evaluation(db, evaluation_id)
    if not (
        access.can_delegate(actor, evaluation)
        or access.is_evaluated_employee(actor, evaluation)
    ):
        raise AuthorizationError("You cannot view the share summary.")

    completed = [s for s in evaluation.shares if s.status == ShareStatus.COMPLETED]
    summary = []
    for item in evaluation.template.items:
        entries = []
        values = []
        for share in completed:
            for score in share.scores:
                if score.item_id != item.id:
                    continue
                entries.append(
                    {
                        "shared_to": share.shared_to.name,
                        "score": score.score,
                        "comment": score.comment,
                    }
                )
                if score.score is not None:
                    values.append(score.score)
        summary.append(
            {
                "item_id": item.id,
                "item_name": item.name,
                "average_score": sum(values) / len(values) if values else None,
                "score_count": len(values),
                "scores": entries,
            }
        )
    return summary
