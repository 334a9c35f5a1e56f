"""Persisted rule configuration (deadline tiers and scoring weights)."""

import logging
from typing import Any, Dict, Type, TypeVar, Union

import pydantic
from sqlalchemy.orm import Session

import models
from deadlines import DeadlineRules, default_deadline_rules
from errors import ValidationError
from weights import PerformanceRule, default_performance_rule

logger = logging.getLogger(__name__)

DEADLINE_RULES_KEY = "deadline_rules"
PERFORMANCE_RULE_KEY = "performance_rule"

RuleT = TypeVar("RuleT", bound=pydantic.BaseModel)


def _get_setting(db: Session, key: str):
    return db.query(models.SystemSetting).filter(models.SystemSetting.key == key).first()


def _set_setting(db: Session, key: str, value: str, type_: str = "json") -> None:
    setting = _get_setting(db, key)
    if setting is None:
        db.add(models.SystemSetting(key=key, value=value, type=type_))
    else:
        setting.value = value
        setting.type = type_


def _coerce(model: Type[RuleT], payload: Union[RuleT, Dict[str, Any]]) -> RuleT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid rule configuration.",
            errors=exc.errors(
                include_url=False, include_context=False, include_input=False
            ),
        ) from exc


def get_deadline_rules(db: Session) -> DeadlineRules:
    setting = _get_setting(db, DEADLINE_RULES_KEY)
    if setting is None:
        return default_deadline_rules()
    return DeadlineRules.model_validate_json(setting.value)


def update_deadline_rules(
    db: Session, payload: Union[DeadlineRules, Dict[str, Any]]
) -> DeadlineRules:
    rules = _coerce(DeadlineRules, payload)
    _set_setting(db, DEADLINE_RULES_KEY, rules.model_dump_json())
    db.commit()
    logger.info("Deadline rules updated: %s", rules.model_dump())
    return rules


def get_performance_rule(db: Session) -> PerformanceRule:
    """Stored rule, or the disabled default when none was saved yet."""
    setting = _get_setting(db, PERFORMANCE_RULE_KEY)
    if setting is None:
        return default_performance_rule()
    return PerformanceRule.model_validate_json(setting.value)


def update_performance_rule(
    db: Session, payload: Union[PerformanceRule, Dict[str, Any]]
) -> PerformanceRule:
    rule = _coerce(PerformanceRule, payload)
    _set_setting(db, PERFORMANCE_RULE_KEY, rule.model_dump_json())
    db.commit()
    logger.info("Performance rule updated (enabled=%s)", rule.enabled)
    return rule
