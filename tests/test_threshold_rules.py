from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import pytest

from database import Base
from errors import NotFound
from models import Alert, ConditionType, SourceType, TimePeriod
from periods import FixedClock
from schemas import CategoryIn, RuleIn, TransactionIn, UserIn
from services import (
    AlertService,
    CategoryService,
    RuleService,
    ThresholdRuleEvaluator,
    TransactionService,
    UserService,
)


def _rule_alerts(session: Session, rule_id: int) -> list[Alert]:
    return session.scalars(
        select(Alert).where(Alert.source_type == SourceType.rule, Alert.source_id == rule_id)
    ).all()


def test_greater_than_rule_alerts_once_per_unread_violation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        groceries = CategoryService(session, user.id).create(CategoryIn(name="Groceries"))
        TransactionService(session, user.id, clock).create(
            TransactionIn(date=date(2025, 1, 15), amount=Decimal("600.00"), category_id=groceries.id)
        )
        rule = RuleService(session, user.id).create(
            RuleIn(
                name="Big month",
                category_id=groceries.id,
                condition_type=ConditionType.greater_than,
                threshold=Decimal("500.00"),
                period=TimePeriod.monthly,
            )
        )
        evaluator = ThresholdRuleEvaluator(session, clock)

        assert evaluator.evaluate_rules_for_user(user.id) == 1
        assert evaluator.evaluate_rules_for_user(user.id) == 0

        alerts = _rule_alerts(session, rule.id)
        assert len(alerts) == 1
        assert alerts[0].message == (
            "Rule 'Big month' violated: spending in Groceries exceeded "
            "the threshold of 500.00 (current: 600.00)"
        )

        AlertService(session, user.id).mark_read(alerts[0].id)
        assert evaluator.evaluate_rules_for_user(user.id) == 1
        assert len(_rule_alerts(session, rule.id)) == 2


def test_new_transaction_triggers_matching_rules() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        categories = CategoryService(session, user.id)
        groceries = categories.create(CategoryIn(name="Groceries"))
        travel = categories.create(CategoryIn(name="Travel"))
        rules = RuleService(session, user.id)
        grocery_rule = rules.create(
            RuleIn(
                name="Groceries cap",
                category_id=groceries.id,
                condition_type=ConditionType.greater_than,
                threshold=Decimal("100.00"),
                period=TimePeriod.weekly,
            )
        )
        travel_rule = rules.create(
            RuleIn(
                name="Travel cap",
                category_id=travel.id,
                condition_type=ConditionType.greater_than,
                threshold=Decimal("1.00"),
                period=TimePeriod.weekly,
            )
        )
        transactions = TransactionService(session, user.id, clock)

        transactions.create(
            TransactionIn(date=date(2025, 1, 18), amount=Decimal("60.00"), category_id=groceries.id)
        )
        assert _rule_alerts(session, grocery_rule.id) == []

        transactions.create(
            TransactionIn(date=date(2025, 1, 19), amount=Decimal("70.00"), category_id=groceries.id)
        )
        alerts = _rule_alerts(session, grocery_rule.id)
        assert len(alerts) == 1
        assert "(current: 130.00)" in alerts[0].message
        assert _rule_alerts(session, travel_rule.id) == []


def test_condition_types_and_all_category_rules() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        rules = RuleService(session, user.id)
        low = rules.create(
            RuleIn(
                name="Too quiet",
                condition_type=ConditionType.less_than,
                threshold=Decimal("100.00"),
                period=TimePeriod.weekly,
            )
        )
        evaluator = ThresholdRuleEvaluator(session, clock)

        result = evaluator.evaluate_rule(low.id)
        assert result is not None and result.created
        assert "spending in all categories fell below the threshold of 100.00" in result.alert.message
        assert "(current: 0.00)" in result.alert.message

        TransactionService(session, user.id, clock).create(
            TransactionIn(date=date(2025, 1, 20), amount=Decimal("250.00"))
        )
        exact = rules.create(
            RuleIn(
                name="Exactly",
                condition_type=ConditionType.equal_to,
                threshold=Decimal("250"),
                period=TimePeriod.daily,
            )
        )
        result = evaluator.evaluate_rule(exact.id)
        assert result is not None and result.created
        assert "reached exactly" in result.alert.message


def test_transactions_outside_window_do_not_count() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        TransactionService(session, user.id, clock).create(
            TransactionIn(date=date(2024, 12, 1), amount=Decimal("900.00"))
        )
        rule = RuleService(session, user.id).create(
            RuleIn(
                name="Anything",
                condition_type=ConditionType.greater_than,
                threshold=Decimal("0"),
                period=TimePeriod.monthly,
            )
        )
        evaluator = ThresholdRuleEvaluator(session, clock)

        assert evaluator.evaluate_rule(rule.id) is None

        clock.current = date(2024, 12, 31)
        assert evaluator.evaluate_rule(rule.id) is not None


def test_inactive_rules_are_skipped_and_failures_isolated(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        rules = RuleService(session, user.id)

        def make(name: str, active: bool = True):
            return rules.create(
                RuleIn(
                    name=name,
                    condition_type=ConditionType.less_than,
                    threshold=Decimal("10"),
                    period=TimePeriod.daily,
                    active=active,
                )
            )

        broken = make("Broken")
        healthy = make("Healthy")
        paused = make("Paused", active=False)

        original = ThresholdRuleEvaluator.window_total

        def flaky(self, rule):
            if rule.id == broken.id:
                raise RuntimeError("boom")
            return original(self, rule)

        monkeypatch.setattr(ThresholdRuleEvaluator, "window_total", flaky)

        assert ThresholdRuleEvaluator(session, clock).evaluate_rules_for_user(user.id) == 1
        assert len(_rule_alerts(session, healthy.id)) == 1
        assert _rule_alerts(session, broken.id) == []
        assert _rule_alerts(session, paused.id) == []


def test_unknown_rule_raises_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(NotFound):
            ThresholdRuleEvaluator(session, FixedClock(date(2025, 1, 20))).evaluate_rule(42)


def test_alert_storage_failure_does_not_block_later_rules(monkeypatch, caplog) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(date(2025, 1, 20))

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        rules = RuleService(session, user.id)
        first, second = [
            rules.create(
                RuleIn(
                    name=name,
                    condition_type=ConditionType.less_than,
                    threshold=Decimal("10"),
                    period=TimePeriod.daily,
                )
            )
            for name in ("First", "Second")
        ]
        failing_id = first.id
        real_commit = session.commit

        def commit():
            if any(
                isinstance(obj, Alert) and obj.source_id == failing_id for obj in session.new
            ):
                raise OperationalError("INSERT INTO alerts", {}, Exception("disk I/O error"))
            real_commit()

        monkeypatch.setattr(session, "commit", commit)

        assert ThresholdRuleEvaluator(session, clock).evaluate_rules_for_user(user.id) == 1
        assert _rule_alerts(session, failing_id) == []
        assert len(_rule_alerts(session, second.id)) == 1
        assert "alert_failed" in caplog.text
