import pytest

import settings
from errors import ValidationError


class DeadlineRuleSettingsTests:
    def test_defaults_when_nothing_stored(self, db):
        rules = settings.get_deadline_rules(db)
        assert rules.standard_days.budgets() == [7, 4, 2, 1]
        assert rules.time_threshold.emergency == 6
        assert rules.auto_process_overdue is False

    def test_round_trip(self, db):
        payload = settings.get_deadline_rules(db).model_dump()
        payload["time_threshold"]["standard"] = 20
        payload["auto_process_overdue"] = True
        settings.update_deadline_rules(db, payload)

        stored = settings.get_deadline_rules(db)
        assert stored.time_threshold.standard == 20
        assert stored.auto_process_overdue is True

    def test_invalid_rules_are_not_stored(self, db):
        payload = settings.get_deadline_rules(db).model_dump()
        payload["standard_days"]["manager_eval"] = 1
        with pytest.raises(ValidationError) as excinfo:
            settings.update_deadline_rules(db, payload)
        assert excinfo.value.details["errors"]
        assert settings.get_deadline_rules(db).standard_days.manager_eval == 4


class PerformanceRuleSettingsTests:
    def test_disabled_default(self, db):
        assert settings.get_performance_rule(db).enabled is False

    def test_weights_must_add_up(self, db):
        payload = settings.get_performance_rule(db).model_dump()
        payload["no_invitation"]["self_weight"] = 50
        with pytest.raises(ValidationError):
            settings.update_performance_rule(db, payload)

    def test_update_replaces_existing(self, db):
        payload = settings.get_performance_rule(db).model_dump()
        payload["enabled"] = True
        settings.update_performance_rule(db, payload)
        payload["no_invitation"] = {"self_weight": 20, "superior_weight": 80}
        settings.update_performance_rule(db, payload)

        rule = settings.get_performance_rule(db)
        assert rule.enabled
        assert rule.no_invitation.self_weight == 20
