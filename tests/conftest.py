import os

# Keep the module-level engine away from the working directory
os.environ.setdefault("KPI_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401 - registers the tables on Base
import notifications
from db import Base
from tests.factories import NOW, create_employee, create_evaluation, create_template


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def outbox():
    sent = []
    previous = notifications.set_sender(
        lambda recipient, message: sent.append((recipient.id, message))
    )
    yield sent
    notifications.set_sender(previous)


@pytest.fixture
def people(db):
    """HR, a manager, a report of that manager, and an outsider."""
    hr = create_employee(db, "Hana", role=models.Role.HR)
    manager = create_employee(db, "Mark", role=models.Role.MANAGER)
    employee = create_employee(db, "Erin", manager=manager)
    outsider = create_employee(db, "Otto")
    return {"hr": hr, "manager": manager, "employee": employee, "outsider": outsider}


@pytest.fixture
def template(db):
    return create_template(db, max_scores=(50, 50))


@pytest.fixture
def evaluation(db, people, template, outbox):
    return create_evaluation(db, people["hr"], people["employee"], template, now=NOW)


@pytest.fixture
def scores(evaluation):
    """Score rows of ``evaluation`` in item order."""
    return sorted(evaluation.scores, key=lambda s: s.item.order)
