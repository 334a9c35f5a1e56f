from datetime import datetime

import evaluations
import models
from auth_utils import hash_password

TEST_PASSWORD = "TestPass123!"  # noqa: S105 - test credentials only

# Early in a 31-day month: the standard schedule applies
NOW = datetime(2025, 3, 3, 9, 0)


def create_employee(db, name, role=models.Role.EMPLOYEE, manager=None, is_active=True):
    employee = models.Employee(
        name=name,
        email=f"{name.lower()}@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        is_active=is_active,
        manager_id=manager.id if manager is not None else None,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


def create_template(db, period=models.Period.MONTHLY, max_scores=(50, 50), name="Delivery"):
    template = models.KPITemplate(
        name=name,
        period=period,
        items=[
            models.KPIItem(name=f"Item {index + 1}", max_score=max_score, order=index + 1)
            for index, max_score in enumerate(max_scores)
        ],
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


def create_evaluation(db, hr, employee, template, now=NOW, year=2025, month=3, **kwargs):
    created, _plan = evaluations.create_evaluations(
        db,
        hr,
        [employee.id],
        template.id,
        template.period,
        year,
        month=month,
        now=now,
        **kwargs,
    )
    return created[0]
