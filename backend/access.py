# access.py
# ------------------------------------------------------------
# Relationship-based permission checks for evaluations.
# Pure predicates: they never raise and never touch the session.
# ------------------------------------------------------------

import models


def is_hr(actor: models.Employee) -> bool:
    return actor is not None and actor.role == models.Role.HR


def is_evaluated_employee(actor: models.Employee, evaluation: models.Evaluation) -> bool:
    return actor is not None and actor.id == evaluation.employee_id


def is_direct_manager(actor: models.Employee, employee: models.Employee) -> bool:
    """The actor is the employee's direct manager (and not the employee)."""
    if actor is None or employee is None:
        return False
    return employee.manager_id == actor.id and actor.id != employee.id


def can_view_evaluation(actor: models.Employee, evaluation: models.Evaluation) -> bool:
    """
    Employee themselves, their direct manager, HR, or anyone the evaluation
    was shared with.
    """
    if is_hr(actor) or is_evaluated_employee(actor, evaluation):
        return True
    if is_direct_manager(actor, evaluation.employee):
        return True
    return any(share.shared_to_id == actor.id for share in evaluation.shares)


def can_delegate(actor: models.Employee, evaluation: models.Evaluation) -> bool:
    """Evaluators outside the employee (manager or HR) may ask for extra opinions."""
    return is_hr(actor) or is_direct_manager(actor, evaluation.employee)
