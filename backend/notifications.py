"""
Who hears about an evaluation moving forward, and how they are told.

Delivery goes through a replaceable sender; the default one only logs. A
failing sender is logged and otherwise ignored, so notifications never undo
a committed transition.
"""

import logging
from typing import Callable, List

from sqlalchemy.orm import Session

import models
from models import Status

logger = logging.getLogger(__name__)

Sender = Callable[[models.Employee, str], None]


def log_sender(recipient: models.Employee, message: str) -> None:
    logger.info("Notification for %s <%s>: %s", recipient.name, recipient.email, message)


_sender: Sender = log_sender


def set_sender(sender: Sender) -> Sender:
    """Install a new sender and return the previous one."""
    global _sender
    previous, _sender = _sender, sender
    return previous


def hr_users(db: Session) -> List[models.Employee]:
    return (
        db.query(models.Employee)
        .filter(models.Employee.role == models.Role.HR, models.Employee.is_active.is_(True))
        .order_by(models.Employee.id)
        .all()
    )


def _describe(evaluation: models.Evaluation) -> str:
    if evaluation.month:
        period = f"{evaluation.year}-{evaluation.month:02d}"
    elif evaluation.quarter:
        period = f"{evaluation.year} Q{evaluation.quarter}"
    else:
        period = str(evaluation.year)
    return f"'{evaluation.template.name}' ({period}) for {evaluation.employee.name}"


def recipients_for_status(
    db: Session, evaluation: models.Evaluation, status: Status
) -> List[models.Employee]:
    if status == Status.SELF_EVALUATED:
        manager = evaluation.employee.manager
        return [manager] if manager is not None else []
    if status in (Status.MANAGER_EVALUATED, Status.COMPLETED):
        return hr_users(db)
    if status in (Status.PENDING, Status.PENDING_CONFIRM):
        return [evaluation.employee]
    return []


def _message_for(evaluation: models.Evaluation, status: Status) -> str:
    subject = _describe(evaluation)
    if status == Status.PENDING:
        return f"New performance evaluation {subject} is waiting for your self evaluation."
    if status == Status.SELF_EVALUATED:
        return f"Evaluation {subject} is waiting for your manager review."
    if status == Status.MANAGER_EVALUATED:
        return f"Evaluation {subject} is waiting for HR review."
    if status == Status.PENDING_CONFIRM:
        return (
            f"Evaluation {subject} has been reviewed (total {evaluation.total_score:.1f}). "
            f"Please confirm the result."
        )
    return f"Evaluation {subject} is completed (total {evaluation.total_score:.1f})."


def _dispatch(recipients: List[models.Employee], message: str, evaluation_id: int) -> int:
    sent = 0
    for recipient in recipients:
        try:
            _sender(recipient, message)
            sent += 1
        except Exception:
            logger.exception(
                "Failed to notify employee %s about evaluation %s",
                recipient.id,
                evaluation_id,
            )
    return sent


def notify_status(db: Session, evaluation: models.Evaluation) -> int:
    """Tell whoever the evaluation's current status waits on. Returns the number sent."""
    status = evaluation.status
    return _dispatch(
        recipients_for_status(db, evaluation, status),
        _message_for(evaluation, status),
        evaluation.id,
    )


def notify_objection_submitted(db: Session, evaluation: models.Evaluation) -> int:
    recipients = hr_users(db)
    manager = evaluation.employee.manager
    if manager is not None and manager not in recipients:
        recipients.insert(0, manager)
    message = (
        f"Objection raised on evaluation {_describe(evaluation)}: "
        f"{evaluation.objection_reason}"
    )
    return _dispatch(recipients, message, evaluation.id)


def notify_objection_handled(db: Session, evaluation: models.Evaluation) -> int:
    message = (
        f"Your objection on evaluation {_describe(evaluation)} was handled "
        f"(adjusted total {evaluation.total_score:.2f}). Please confirm the result."
    )
    return _dispatch([evaluation.employee], message, evaluation.id)
