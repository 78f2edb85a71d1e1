from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import BudgetCategory, BudgetStatus, Goal, Transaction
from periods import FixedClock
from schemas import BudgetIn, CategoryIn, CategoryLimitIn, GoalIn, TransactionIn, UserIn
from services import (
    BudgetLifecycleManager,
    BudgetService,
    CategoryService,
    GoalProgressTracker,
    GoalService,
    SpendAggregator,
    TransactionService,
    UserService,
)


CLOCK = FixedClock(date(2025, 1, 20))


def _factory(tmp_path) -> sessionmaker:
    # a file database so each session gets its own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _seed(session) -> tuple[int, int, int]:
    user = UserService(session).create(UserIn(name="Ana"))
    groceries = CategoryService(session, user.id).create(CategoryIn(name="Groceries"))
    budget = BudgetService(session, user.id, CLOCK).create(
        BudgetIn(
            name="January",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
            categories=[
                CategoryLimitIn(category_id=groceries.id, limit_amount=Decimal("500.00"))
            ],
        )
    )
    return user.id, groceries.id, budget.id


def _spend(session, user_id: int, category_id: int, amount: str) -> None:
    TransactionService(session, user_id, CLOCK).create(
        TransactionIn(date=date(2025, 1, 10), amount=Decimal(amount), category_id=category_id)
    )


def _stored(factory: sessionmaker, budget_id: int) -> tuple[Decimal, Decimal]:
    with factory() as session:
        spent = session.scalar(
            select(BudgetCategory.spent_amount).where(BudgetCategory.budget_id == budget_id)
        )
        ledger = session.scalar(select(func.sum(Transaction.amount)))
        return spent, ledger


def test_deltas_from_two_sessions_are_not_lost(tmp_path) -> None:
    factory = _factory(tmp_path)

    with factory() as a, factory() as b:
        user_id, category_id, budget_id = _seed(a)

        _spend(a, user_id, category_id, "100.00")
        _spend(b, user_id, category_id, "50.00")
        _spend(a, user_id, category_id, "30.00")

    spent, ledger = _stored(factory, budget_id)
    assert spent == Decimal("180.00")
    assert spent == ledger


def test_goal_contributions_from_two_sessions_accumulate(tmp_path) -> None:
    factory = _factory(tmp_path)

    with factory() as a, factory() as b:
        user = UserService(a).create(UserIn(name="Ana"))
        goal = GoalService(a, user.id).create(
            GoalIn(name="Bike", target_amount=Decimal("1000.00"), target_date=date(2025, 12, 31))
        )

        for session in (a, b, a):
            GoalProgressTracker(session, CLOCK).update_progress(
                goal.id, user.id, Decimal("100.00")
            )

    with factory() as session:
        stored = session.get(Goal, goal.id)
        assert stored.current_amount == Decimal("300.00")
        assert stored.completed is False


def test_interleaved_deltas_and_recomputes_agree_with_ledger(tmp_path) -> None:
    factory = _factory(tmp_path)

    with factory() as a, factory() as b:
        user_id, category_id, budget_id = _seed(a)

        _spend(a, user_id, category_id, "100.00")
        _spend(b, user_id, category_id, "50.00")
        SpendAggregator(a, CLOCK).recompute(budget_id)
        _spend(a, user_id, category_id, "25.00")
        row = SpendAggregator(b, CLOCK).recompute_category(budget_id, category_id)
        assert row.spent_amount == Decimal("175.00")
        _spend(b, user_id, category_id, "10.00")

    spent, ledger = _stored(factory, budget_id)
    assert spent == Decimal("185.00")
    assert spent == ledger


def test_evaluation_sees_status_changed_by_another_session(tmp_path) -> None:
    factory = _factory(tmp_path)

    with factory() as a, factory() as b:
        _, _, budget_id = _seed(a)

        BudgetLifecycleManager(b, CLOCK).archive_budget(budget_id)

        assert BudgetLifecycleManager(a, CLOCK).evaluate_budget(budget_id) == BudgetStatus.completed
