"""Discussion threads attached to an evaluation."""

import logging
from typing import List

from sqlalchemy import or_
from sqlalchemy.orm import Session

import access
import models
from errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _viewable_evaluation(
    db: Session, evaluation_id: int, actor: models.Employee
) -> models.Evaluation:
    evaluation = (
        db.query(models.Evaluation).filter(models.Evaluation.id == evaluation_id).first()
    )
    if evaluation is None:
        raise NotFoundError(f"Evaluation with id {evaluation_id} not found")
    if not access.can_view_evaluation(actor, evaluation):
        raise AuthorizationError("You cannot comment on this evaluation.")
    return evaluation


def _own_comment(
    db: Session, comment_id: int, actor: models.Employee
) -> models.EvaluationComment:
    comment = (
        db.query(models.EvaluationComment)
        .filter(models.EvaluationComment.id == comment_id)
        .first()
    )
    if comment is None:
        raise NotFoundError(f"Comment with id {comment_id} not found")
    if comment.user_id != actor.id:
        raise AuthorizationError("Only the author can change a comment.")
    return comment


def _clean(content: str) -> str:
    if content is None or not content.strip():
        raise ValidationError("Comment cannot be empty.")
    return content.strip()


def create_comment(
    db: Session,
    evaluation_id: int,
    actor: models.Employee,
    content: str,
    is_private: bool = False,
) -> models.EvaluationComment:
    evaluation = _viewable_evaluation(db, evaluation_id, actor)
    comment = models.EvaluationComment(
        evaluation_id=evaluation.id,
        user_id=actor.id,
        content=_clean(content),
        is_private=is_private,
    )
    db.add(comment)
    db.commit()
    db.refresh(comment)
    logger.info("Comment %s added to evaluation %s", comment.id, evaluation.id)
    return comment


def update_comment(
    db: Session,
    comment_id: int,
    actor: models.Employee,
    content: str,
    is_private: bool = None,
) -> models.EvaluationComment:
    comment = _own_comment(db, comment_id, actor)
    comment.content = _clean(content)
    if is_private is not None:
        comment.is_private = is_private
    db.commit()
    db.refresh(comment)
    return comment


def delete_comment(db: Session, comment_id: int, actor: models.Employee) -> None:
    comment = _own_comment(db, comment_id, actor)
    db.delete(comment)
    db.commit()
    logger.info("Comment %s deleted by employee %s", comment_id, actor.id)


def list_comments(
    db: Session, evaluation_id: int, actor: models.Employee
) -> List[models.EvaluationComment]:
    """Public comments plus the caller's own private ones, newest first."""
    evaluation = _viewable_evaluation(db, evaluation_id, actor)
    return (
        db.query(models.EvaluationComment)
        .filter(
            models.EvaluationComment.evaluation_id == evaluation.id,
            or_(
                models.EvaluationComment.is_private.is_(False),
                models.EvaluationComment.user_id == actor.id,
            ),
        )
        .order_by(
            models.EvaluationComment.created_at.desc(),
            models.EvaluationComment.id.desc(),
        )
        .all()
    )
