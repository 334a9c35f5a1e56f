"""
Evaluation records: creation, reads, objections and the explicit
performance-rule blend. Stage transitions live in ``workflow``.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

import access
import deadlines
import models
import notifications
import settings
import shares
from db import atomic, utcnow
from errors import (
    AuthorizationError,
    NotFoundError,
    StateMismatchError,
    ValidationError,
)
from models import Period, Status
from scoring import lock_evaluation, load_scores
from weights import resolve_weights, weighted_average
from workflow import is_overdue

logger = logging.getLogger(__name__)

AUTO_HR_COMMENT = "Calculated automatically from the performance rule"

OPEN_STATUSES = (
    Status.PENDING,
    Status.SELF_EVALUATED,
    Status.MANAGER_EVALUATED,
    Status.PENDING_CONFIRM,
)

MAX_PAGE_SIZE = 100


def validate_identity(
    period, year: int, month: Optional[int], quarter: Optional[int]
) -> Period:
    """month iff monthly, quarter iff quarterly, neither iff yearly."""
    try:
        period = Period(period)
    except ValueError:
        raise ValidationError(f"Unknown period {period!r}.") from None

    if year is None or year < 1:
        raise ValidationError("A valid year is required.")

    if period == Period.MONTHLY:
        if month is None or not 1 <= month <= 12:
            raise ValidationError("Monthly evaluations need a month between 1 and 12.")
        if quarter is not None:
            raise ValidationError("Monthly evaluations cannot carry a quarter.")
    elif period == Period.QUARTERLY:
        if quarter is None or not 1 <= quarter <= 4:
            raise ValidationError("Quarterly evaluations need a quarter between 1 and 4.")
        if month is not None:
            raise ValidationError("Quarterly evaluations cannot carry a month.")
    elif month is not None or quarter is not None:
        raise ValidationError("Yearly evaluations carry neither month nor quarter.")
    return period


def create_evaluations(
    db: Session,
    actor: models.Employee,
    employee_ids: Iterable[int],
    template_id: int,
    period,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    custom_deadlines: Optional[Dict[str, datetime]] = None,
    force: bool = False,
    now: Optional[datetime] = None,
):
    """
    Create one evaluation (plus an empty score row per template item) for
    each employee, all in one transaction.

    Deadlines come from the configured tiers unless ``custom_deadlines`` is
    given. A plan that does not fit the period is refused unless ``force``.
    Returns ``(evaluations, plan)``.
    """
    if not access.is_hr(actor):
        raise AuthorizationError("Only HR can create evaluations.")

    period = validate_identity(period, year, month, quarter)
    employee_ids = list(dict.fromkeys(employee_ids))
    if not employee_ids:
        raise ValidationError("At least one employee is required.")

    template = (
        db.query(models.KPITemplate).filter(models.KPITemplate.id == template_id).first()
    )
    if template is None:
        raise NotFoundError(f"Template with id {template_id} not found")
    if template.period != period:
        raise ValidationError(
            f"Template period is {template.period.value}, not {period.value}."
        )
    if not template.items:
        raise ValidationError("The template has no KPI items.")

    employees = (
        db.query(models.Employee).filter(models.Employee.id.in_(employee_ids)).all()
    )
    missing = sorted(set(employee_ids) - {e.id for e in employees})
    if missing:
        raise ValidationError("Some employees do not exist.", missing_ids=missing)

    now = now or utcnow()
    custom_deadlines = {
        name: (custom_deadlines or {}).get(name) for name in deadlines.STAGE_FIELDS
    }
    if any(custom_deadlines.values()):
        plan = deadlines.plan_custom_deadlines(
            period, year, month, quarter, now=now, **custom_deadlines
        )
    else:
        plan = deadlines.plan_deadlines(
            settings.get_deadline_rules(db), period, year, month, quarter, now=now
        )
    # force only overrides the time check, never an incomplete custom set
    if plan.missing:
        raise ValidationError(plan.message, missing=plan.missing)
    if not plan.is_valid and not force:
        raise ValidationError(plan.message, available_days=plan.available_days)

    by_id = {e.id: e for e in employees}
    created = []
    with atomic(db):
        for employee_id in employee_ids:
            evaluation = models.Evaluation(
                employee_id=employee_id,
                template_id=template.id,
                period=period,
                year=year,
                month=month,
                quarter=quarter,
                status=Status.PENDING,
                total_score=0.0,
                time_mode=plan.time_mode,
                created_at=now,
                updated_at=now,
                scores=[models.KPIScore(item_id=item.id) for item in template.items],
                **plan.deadlines(),
            )
            evaluation.employee = by_id[employee_id]
            evaluation.template = template
            db.add(evaluation)
            created.append(evaluation)

    logger.info(
        "Created %d %s evaluation(s) from template %s (%s mode%s)",
        len(created),
        period.value,
        template.id,
        plan.time_mode.value,
        ", forced" if force and not plan.is_valid else "",
    )
    for evaluation in created:
        notifications.notify_status(db, evaluation)
    return created, plan


def get_evaluation(
    db: Session, evaluation_id: int, actor: models.Employee
) -> models.Evaluation:
    evaluation = (
        db.query(models.Evaluation).filter(models.Evaluation.id == evaluation_id).first()
    )
    if evaluation is None:
        raise NotFoundError(f"Evaluation with id {evaluation_id} not found")
    if not access.can_view_evaluation(actor, evaluation):
        raise AuthorizationError("You cannot view this evaluation.")
    return evaluation


def delete_evaluation(db: Session, evaluation_id: int, actor: models.Employee) -> None:
    if not access.is_hr(actor):
        raise AuthorizationError("Only HR can delete evaluations.")
    with atomic(db):
        evaluation = lock_evaluation(db, evaluation_id)
        db.delete(evaluation)
    logger.info("Evaluation %s deleted by employee %s", evaluation_id, actor.id)


@dataclass
class EvaluationPage:
    items: List[models.Evaluation]
    total: int
    page: int
    page_size: int
    stats: Dict[str, float] = field(default_factory=dict)


def _reports_of(manager_id: int):
    return select(models.Employee.id).where(models.Employee.manager_id == manager_id)


def _visible_to(query, actor: models.Employee):
    if access.is_hr(actor):
        return query
    if actor.role == models.Role.MANAGER:
        return query.filter(
            or_(
                models.Evaluation.employee_id == actor.id,
                models.Evaluation.employee_id.in_(_reports_of(actor.id)),
            )
        )
    return query.filter(models.Evaluation.employee_id == actor.id)


def list_evaluations(
    db: Session,
    actor: models.Employee,
    employee_id: Optional[int] = None,
    status=None,
    period=None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    manager_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 10,
) -> EvaluationPage:
    """
    Role-scoped listing, newest first.

    - HR: every evaluation
    - Manager: their own plus their direct reports'
    - Employee: their own

    ``stats`` ignores the status filter so the counters stay meaningful while
    browsing one status.
    """
    page = max(page or 1, 1)
    if not page_size or page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = 10

    base = _visible_to(db.query(models.Evaluation), actor)
    if employee_id is not None:
        base = base.filter(models.Evaluation.employee_id == employee_id)
    if manager_id is not None:
        base = base.filter(
            models.Evaluation.employee_id.in_(_reports_of(manager_id))
        )
    if period is not None:
        base = base.filter(models.Evaluation.period == Period(period))
    if year is not None:
        base = base.filter(models.Evaluation.year == year)
    if month is not None:
        base = base.filter(models.Evaluation.month == month)
    if quarter is not None:
        base = base.filter(models.Evaluation.quarter == quarter)

    average = (
        base.filter(models.Evaluation.total_score > 0)
        .with_entities(func.avg(models.Evaluation.total_score))
        .scalar()
    )
    stats = {
        "total": base.count(),
        "pending": base.filter(models.Evaluation.status.in_(OPEN_STATUSES)).count(),
        "completed": base.filter(models.Evaluation.status == Status.COMPLETED).count(),
        "average_score": round(average or 0.0, 2),
    }

    query = base
    if status is not None:
        query = query.filter(models.Evaluation.status == Status(status))

    total = query.count()
    items = (
        query.order_by(models.Evaluation.created_at.desc(), models.Evaluation.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return EvaluationPage(
        items=items, total=total, page=page, page_size=page_size, stats=stats
    )


def list_awaiting(db: Session, actor: models.Employee) -> List[models.Evaluation]:
    """Evaluations whose next stage is the actor's to perform."""
    conditions = [
        and_(
            models.Evaluation.employee_id == actor.id,
            models.Evaluation.status.in_((Status.PENDING, Status.PENDING_CONFIRM)),
        ),
        and_(
            models.Evaluation.employee_id.in_(_reports_of(actor.id)),
            models.Evaluation.status == Status.SELF_EVALUATED,
        ),
    ]
    if access.is_hr(actor):
        conditions.append(models.Evaluation.status == Status.MANAGER_EVALUATED)
    return (
        db.query(models.Evaluation)
        .filter(or_(*conditions))
        .order_by(models.Evaluation.id)
        .all()
    )


def submit_objection(
    db: Session, evaluation_id: int, actor: models.Employee, reason: str
) -> models.Evaluation:
    """The employee disputes the reviewed result, once, before confirming."""
    if not reason or not reason.strip():
        raise ValidationError("An objection needs a reason.")

    with atomic(db):
        evaluation = lock_evaluation(db, evaluation_id)
        if not access.is_evaluated_employee(actor, evaluation):
            raise AuthorizationError("Only the evaluated employee can object.")
        if evaluation.status != Status.PENDING_CONFIRM:
            raise StateMismatchError(
                "Objections can only be raised while waiting for confirmation.",
                status=evaluation.status.value,
            )
        if evaluation.has_objection or evaluation.objection_reason:
            raise StateMismatchError("An objection was already submitted.")
        evaluation.has_objection = True
        evaluation.objection_reason = reason.strip()

    logger.info("Objection raised on evaluation %s", evaluation.id)
    notifications.notify_objection_submitted(db, evaluation)
    return evaluation


def handle_objection(
    db: Session,
    evaluation_id: int,
    actor: models.Employee,
    total_score: float,
    final_comment: str,
) -> models.Evaluation:
    """HR settles an objection with an adjusted total the employee then confirms."""
    if not access.is_hr(actor):
        raise AuthorizationError("Only HR can handle objections.")
    if not final_comment or not final_comment.strip():
        raise ValidationError("Handling an objection needs a comment.")
    if (
        total_score is None
        or isinstance(total_score, bool)
        or not math.isfinite(total_score)
        or total_score < 0
    ):
        raise ValidationError("Adjusted total must be a non-negative number.")

    with atomic(db):
        evaluation = lock_evaluation(db, evaluation_id)
        if not evaluation.has_objection:
            raise StateMismatchError("This evaluation has no open objection.")
        evaluation.has_objection = False
        evaluation.total_score = float(total_score)
        evaluation.final_comment = final_comment.strip()

    logger.info(
        "Objection on evaluation %s handled by employee %s (total %.2f)",
        evaluation.id,
        actor.id,
        evaluation.total_score,
    )
    notifications.notify_objection_handled(db, evaluation)
    return evaluation


def apply_performance_rule(
    db: Session, evaluation_id: int, actor: models.Employee
) -> models.Evaluation:
    """
    Blend self, delegated and manager scores into HR scores using the
    configured weights. Only HR, only while the evaluation waits for HR
    review. Rows with nothing to blend keep their HR score untouched.
    """
    if not access.is_hr(actor):
        raise AuthorizationError("Only HR can apply the performance rule.")

    rule = settings.get_performance_rule(db)
    with atomic(db):
        evaluation = lock_evaluation(db, evaluation_id)
        if evaluation.status != Status.MANAGER_EVALUATED:
            raise StateMismatchError(
                "The performance rule applies during HR review only.",
                status=evaluation.status.value,
            )

        invited = shares.completed_share_averages(evaluation)
        weights = resolve_weights(rule, has_completed_shares=bool(invited))

        total = 0.0
        updated = 0
        for score in load_scores(db, evaluation.id):
            blended = weighted_average(
                [
                    (weights.self_weight, score.self_score),
                    (weights.invite_weight, invited.get(score.item_id)),
                    (weights.superior_weight, score.manager_score),
                ]
            )
            if blended is None:
                continue
            score.hr_score = round(blended, 2)
            if not (score.hr_comment or "").strip():
                score.hr_comment = AUTO_HR_COMMENT
            total += score.hr_score
            updated += 1

        if updated:
            evaluation.total_score = round(total, 2)

    logger.info(
        "Performance rule (%s) applied to evaluation %s: %d row(s), total %.2f",
        weights.scenario,
        evaluation.id,
        updated,
        evaluation.total_score,
    )
    return evaluation


def find_overdue_evaluations(
    db: Session, now: Optional[datetime] = None
) -> List[models.Evaluation]:
    """Open evaluations whose current stage deadline has passed."""
    now = now or utcnow()
    candidates = (
        db.query(models.Evaluation)
        .filter(models.Evaluation.status.in_(OPEN_STATUSES))
        .order_by(models.Evaluation.id)
        .all()
    )
    return [evaluation for evaluation in candidates if is_overdue(evaluation, now)]
