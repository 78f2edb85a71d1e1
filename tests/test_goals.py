from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import pytest

from database import Base
from errors import NotFound, ValidationFailure
from models import ZERO, Alert, CategoryType, Goal, SourceType, Transaction
from periods import FixedClock
from schemas import CategoryIn, GoalIn, TransactionIn, UserIn
from services import (
    CategoryService,
    GoalProgressTracker,
    GoalService,
    TransactionService,
    UserService,
)


TODAY = date(2025, 1, 20)


def _goal_alerts(session: Session, goal_id: int, kind: str) -> list[Alert]:
    return session.scalars(
        select(Alert).where(
            Alert.source_type == SourceType.goal,
            Alert.source_id == goal_id,
            Alert.kind == kind,
        )
    ).all()


def _setup(session: Session, target: str = "1000.00", target_date: date = date(2025, 12, 31)):
    user = UserService(session).create(UserIn(name="Ana"))
    savings = CategoryService(session, user.id).create(
        CategoryIn(name="Savings", type=CategoryType.income)
    )
    goal = GoalService(session, user.id).create(
        GoalIn(
            name="Emergency fund",
            category_id=savings.id,
            target_amount=Decimal(target),
            target_date=target_date,
        )
    )
    return user, savings, goal


def test_completion_alert_fires_exactly_once() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, _, goal = _setup(session)
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        tracker.update_progress(goal.id, user.id, Decimal("900.00"))
        assert goal.completed is False
        assert _goal_alerts(session, goal.id, "goal_completed") == []

        tracker.update_progress(goal.id, user.id, Decimal("100.00"))
        assert goal.completed is True
        alerts = _goal_alerts(session, goal.id, "goal_completed")
        assert len(alerts) == 1
        assert alerts[0].message == "Congratulations! You've achieved your goal: Emergency fund"

        tracker.update_progress(goal.id, user.id, Decimal("0"))
        assert goal.completed is True
        assert len(_goal_alerts(session, goal.id, "goal_completed")) == 1


def test_progress_rejects_negative_amounts_and_foreign_goals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, _, goal = _setup(session)
        other = UserService(session).create(UserIn(name="Ben"))
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        with pytest.raises(ValidationFailure):
            tracker.update_progress(goal.id, user.id, Decimal("-5.00"))
        with pytest.raises(NotFound):
            tracker.update_progress(goal.id, other.id, Decimal("5.00"))
        with pytest.raises(NotFound):
            tracker.update_progress(goal.id + 50, user.id, Decimal("5.00"))


def test_goal_at_risk_alert_near_deadline() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, _, goal = _setup(session, target_date=TODAY + timedelta(days=10))
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        tracker.update_progress(goal.id, user.id, Decimal("100.00"))

        alerts = _goal_alerts(session, goal.id, "goal_at_risk")
        assert len(alerts) == 1
        assert "10 days remaining" in alerts[0].message
        assert "10.0%" in alerts[0].message
        assert "900.00" in alerts[0].message

        result = tracker.check_risk(goal)
        assert result is not None
        assert result.skipped_reason == "duplicate"
        assert tracker.evaluate_goals_for_user(user.id) == 0


def test_no_risk_alert_when_on_track_or_overdue() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, savings, goal = _setup(session, target_date=TODAY + timedelta(days=10))
        overdue = GoalService(session, user.id).create(
            GoalIn(
                name="Old plan",
                category_id=savings.id,
                target_amount=Decimal("100.00"),
                target_date=TODAY - timedelta(days=1),
            )
        )
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        tracker.update_progress(goal.id, user.id, Decimal("300.00"))

        assert tracker.check_risk(overdue) is None
        assert _goal_alerts(session, goal.id, "goal_at_risk") == []


def test_transactions_feed_linked_goals_only() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(TODAY)

    with Session(engine) as session:
        user, savings, goal = _setup(session, target="500.00")
        groceries = CategoryService(session, user.id).create(CategoryIn(name="Groceries"))
        transactions = TransactionService(session, user.id, clock)

        transactions.create(
            TransactionIn(date=TODAY, amount=Decimal("200.00"), category_id=savings.id)
        )
        transactions.create(
            TransactionIn(date=TODAY, amount=Decimal("50.00"), currency="eur", category_id=savings.id)
        )
        transactions.create(
            TransactionIn(date=TODAY, amount=Decimal("-20.00"), category_id=savings.id)
        )
        transactions.create(
            TransactionIn(date=TODAY, amount=Decimal("100.00"), category_id=groceries.id)
        )

        assert goal.current_amount == Decimal("200.00")
        assert goal.completed is False


def test_resync_converges_with_incremental_progress() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    clock = FixedClock(TODAY)

    with Session(engine) as session:
        user, savings, goal = _setup(session, target="250.00")
        transactions = TransactionService(session, user.id, clock)
        for day, amount in [(3, "200.00"), (1, "100.00"), (2, "80.00")]:
            transactions.create(
                TransactionIn(
                    date=date(2025, 1, day), amount=Decimal(amount), category_id=savings.id
                )
            )

        assert goal.current_amount == Decimal("300.00")
        assert goal.completed is True
        incremental = (goal.current_amount, goal.completed)

        goal.current_amount = Decimal("12.00")
        goal.completed = False
        session.commit()

        synced = GoalProgressTracker(session, clock).sync_all_transactions_with_goals(user.id)

        assert [g.id for g in synced] == [goal.id]
        assert (goal.current_amount, goal.completed) == incremental


def test_zero_target_goal_is_never_at_risk() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(name="Ana"))
        goal = Goal(
            user_id=user.id,
            name="Placeholder",
            target_amount=Decimal("0.00"),
            current_amount=ZERO,
            target_date=TODAY + timedelta(days=10),
            currency="USD",
            completed=False,
        )
        session.add(goal)
        session.commit()
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        assert tracker.check_risk(goal) is None
        assert tracker.evaluate_goals_for_user(user.id) == 0
        assert _goal_alerts(session, goal.id, "goal_at_risk") == []


def test_sync_single_transaction_feeds_linked_goals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, savings, goal = _setup(session, target="500.00")
        other = UserService(session).create(UserIn(name="Ben"))
        imported = Transaction(
            user_id=user.id,
            category_id=savings.id,
            date=TODAY,
            amount=Decimal("120.00"),
            currency="USD",
            version=1,
        )
        session.add(imported)
        session.commit()
        tracker = GoalProgressTracker(session, FixedClock(TODAY))

        assert tracker.sync_transaction_with_goals(imported.id, user.id) == 1
        assert goal.current_amount == Decimal("120.00")

        with pytest.raises(NotFound):
            tracker.sync_transaction_with_goals(imported.id + 50)
        with pytest.raises(NotFound):
            tracker.sync_transaction_with_goals(imported.id, other.id)
        assert goal.current_amount == Decimal("120.00")
