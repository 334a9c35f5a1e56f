"""Two sessions racing on the same rows: the loser gets a ConflictError."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models
import scoring
import shares
import workflow
from db import Base
from errors import ConflictError, StateMismatchError
from models import ShareStatus, Status
from tests.factories import NOW, create_employee, create_evaluation, create_template


@pytest.fixture
def file_sessions(tmp_path):
    # In-memory SQLite shares one connection; racing needs real connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    opened = []

    def open_session():
        session = factory()
        opened.append(session)
        return session

    yield open_session
    for session in opened:
        session.close()
    engine.dispose()


@pytest.fixture
def seeded(file_sessions):
    db = file_sessions()
    hr = create_employee(db, "Hana", role=models.Role.HR)
    manager = create_employee(db, "Mark", role=models.Role.MANAGER)
    employee = create_employee(db, "Erin", manager=manager)
    peer = create_employee(db, "Otto")
    template = create_template(db)
    evaluation = create_evaluation(db, hr, employee, template, now=NOW)
    score_ids = [s.id for s in sorted(evaluation.scores, key=lambda s: s.item.order)]
    return {
        "hr": hr.id,
        "manager": manager.id,
        "employee": employee.id,
        "peer": peer.id,
        "evaluation": evaluation.id,
        "scores": score_ids,
        "items": [item.id for item in template.items],
    }


def actor(session, employee_id):
    return session.get(models.Employee, employee_id)


class RacingTransitionTests:
    def test_score_write_during_self_transition(self, file_sessions, seeded, monkeypatch):
        first, second = file_sessions(), file_sessions()
        for score_id, value in zip(seeded["scores"], (40, 35)):
            scoring.set_self_score(first, score_id, actor(first, seeded["employee"]), value)

        real_compute_total = workflow.compute_total

        def compute_total_while_scores_change(scores, stage):
            scoring.set_self_score(
                second, seeded["scores"][0], actor(second, seeded["employee"]), 10
            )
            return real_compute_total(scores, stage)

        monkeypatch.setattr(workflow, "compute_total", compute_total_while_scores_change)

        with pytest.raises(ConflictError):
            workflow.transition_stage(
                first, seeded["evaluation"], actor(first, seeded["employee"]), "self", now=NOW
            )

        check = file_sessions()
        evaluation = check.get(models.Evaluation, seeded["evaluation"])
        assert evaluation.status == Status.PENDING
        assert evaluation.total_score == 0
        assert check.get(models.KPIScore, seeded["scores"][0]).self_score == 10

    def test_transition_during_score_write(self, file_sessions, seeded, monkeypatch):
        first, second = file_sessions(), file_sessions()
        for score_id, value in zip(seeded["scores"], (40, 35)):
            scoring.set_self_score(first, score_id, actor(first, seeded["employee"]), value)

        real_validate = scoring.validate_score

        def validate_while_transitioned(value, max_score):
            workflow.transition_stage(
                second, seeded["evaluation"], actor(second, seeded["employee"]), "self", now=NOW
            )
            return real_validate(value, max_score)

        monkeypatch.setattr(scoring, "validate_score", validate_while_transitioned)

        with pytest.raises(ConflictError):
            scoring.set_self_score(
                first, seeded["scores"][1], actor(first, seeded["employee"]), 5
            )

        check = file_sessions()
        evaluation = check.get(models.Evaluation, seeded["evaluation"])
        assert evaluation.status == Status.SELF_EVALUATED
        assert evaluation.total_score == 75
        assert check.get(models.KPIScore, seeded["scores"][1]).self_score == 35


class RacingShareTests:
    def test_score_write_loses_to_submit(self, file_sessions, seeded, monkeypatch):
        setup = file_sessions()
        share = shares.create_share(
            setup, seeded["evaluation"], actor(setup, seeded["manager"]), [seeded["peer"]]
        )[0]
        share_id = share.id

        first, second = file_sessions(), file_sessions()
        real_validate = shares.validate_score

        def validate_while_submitted(value, max_score):
            shares.submit_share(second, share_id, actor(second, seeded["peer"]))
            return real_validate(value, max_score)

        monkeypatch.setattr(shares, "validate_score", validate_while_submitted)

        with pytest.raises(ConflictError):
            shares.update_share_score(
                first, share_id, seeded["items"][0], actor(first, seeded["peer"]), 48
            )

        check = file_sessions()
        stored = check.get(models.EvaluationShare, share_id)
        assert stored.status == ShareStatus.COMPLETED
        assert all(row.score is None for row in stored.scores)

    def test_scoring_a_submitted_share_is_refused_after_reload(self, file_sessions, seeded):
        setup = file_sessions()
        share_id = shares.create_share(
            setup, seeded["evaluation"], actor(setup, seeded["manager"]), [seeded["peer"]]
        )[0].id

        first, second = file_sessions(), file_sessions()
        stale = first.get(models.EvaluationShare, share_id)
        assert stale.status == ShareStatus.PENDING

        shares.submit_share(second, share_id, actor(second, seeded["peer"]))

        with pytest.raises(StateMismatchError):
            shares.update_share_score(
                first, share_id, seeded["items"][0], actor(first, seeded["peer"]), 48
            )
