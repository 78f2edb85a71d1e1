import logging
import operator
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from errors import InvalidState, NotFound, ValidationFailure
from models import (
    ZERO,
    Alert,
    AppliedDelta,
    Budget,
    BudgetCategory,
    BudgetStatus,
    Category,
    ConditionType,
    Goal,
    Rule,
    SourceType,
    Transaction,
    User,
)
from periods import Clock, Period, SystemClock, rolling_window
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    GoalIn,
    RuleIn,
    TransactionIn,
    UserIn,
)


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_money(value: object) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: object) -> str:
    return f"{to_money(value):.2f}"


def sum_transactions(
    session: Session,
    user_id: int,
    category_id: Optional[int],
    start: date,
    end: date,
) -> Decimal:
    """Signed sum of a user's transactions dated within [start, end].

    ``category_id=None`` sums across every category of the user.
    """
    stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
        Transaction.user_id == user_id,
        Transaction.date.between(start, end),
    )
    if category_id is not None:
        stmt = stmt.where(Transaction.category_id == category_id)
    return to_money(session.execute(stmt).scalar_one())


def _get_owned(
    session: Session,
    model,
    obj_id: int,
    user_id: Optional[int],
    label: str,
    for_update: bool = False,
):
    if for_update:
        # refresh from the row, not the identity map, before a read-modify-write
        obj = session.get(model, obj_id, with_for_update=True, populate_existing=True)
    else:
        obj = session.get(model, obj_id)
    if obj is None or (user_id is not None and obj.user_id != user_id):
        raise NotFound(label, obj_id)
    return obj


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class _KeyedLocks:
    """Process-wide re-entrant locks keyed by tuples of ids.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[int, ...], _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[tuple[int, ...]]) -> Iterator[None]:
        # sorted acquisition keeps multi-key holders deadlock free
        ordered = sorted(set(keys))
        with self._guard:
            entries = [self._locks.setdefault(key, _LockEntry()) for key in ordered]
            for entry in entries:
                entry.holders += 1
        acquired: list[_LockEntry] = []
        try:
            for entry in entries:
                entry.lock.acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()
            with self._guard:
                for key, entry in zip(ordered, entries):
                    entry.holders -= 1
                    if entry.holders == 0:
                        del self._locks[key]


SPEND_LOCKS = _KeyedLocks()
GOAL_LOCKS = _KeyedLocks()


DEFAULT_ALERT_KINDS: dict[SourceType, str] = {
    SourceType.budget: "limit_exceeded",
    SourceType.rule: "rule_violation",
    SourceType.goal: "goal_completed",
}


@dataclass(frozen=True)
class DispatchResult:
    alert: Optional[Alert] = None
    skipped_reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.alert is not None


class AlertDispatcher:
    """Creates alerts, at most one unread alert per (source_type, source_id, kind).

    ``dispatch`` commits on its own, so callers commit their pending work
    before dispatching. A storage failure is logged and reported as a skip.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_unread_by_source(
        self, source_type: SourceType, source_id: int, kind: Optional[str] = None
    ) -> list[Alert]:
        stmt = select(Alert).where(
            Alert.source_type == source_type,
            Alert.source_id == source_id,
            Alert.read.is_(False),
        )
        if kind is not None:
            stmt = stmt.where(Alert.kind == kind)
        return self.session.scalars(stmt.order_by(Alert.id)).all()

    def dispatch(
        self,
        user_id: int,
        source_type: SourceType,
        source_id: int,
        message: str,
        *,
        kind: Optional[str] = None,
    ) -> DispatchResult:
        kind = kind or DEFAULT_ALERT_KINDS[source_type]
        if self.find_unread_by_source(source_type, source_id, kind):
            logger.info(
                f"alert_skipped: reason=duplicate source={source_type.value}:{source_id} kind={kind}"
            )
            return DispatchResult(skipped_reason="duplicate")

        alert = Alert(
            user_id=user_id,
            source_type=source_type,
            source_id=source_id,
            kind=kind,
            message=message,
            read=False,
        )
        try:
            self.session.add(alert)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(
                f"alert_failed: source={source_type.value}:{source_id} kind={kind}"
            )
            return DispatchResult(skipped_reason="storage_error")

        logger.info(
            f"alert_created: id={alert.id} user_id={user_id} "
            f"source={source_type.value}:{source_id} kind={kind}"
        )
        return DispatchResult(alert=alert)


class AlertService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, unread_only: bool = False) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.user_id == self.user_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
        )
        if unread_only:
            stmt = stmt.where(Alert.read.is_(False))
        return self.session.scalars(stmt).all()

    def mark_read(self, alert_id: int) -> Alert:
        alert = _get_owned(self.session, Alert, alert_id, self.user_id, "Alert")
        alert.read = True
        self.session.commit()
        return alert

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Alert)
            .where(Alert.user_id == self.user_id, Alert.read.is_(False))
            .values(read=True)
        )
        self.session.commit()
        return result.rowcount or 0

    def delete(self, alert_id: int) -> None:
        alert = _get_owned(self.session, Alert, alert_id, self.user_id, "Alert")
        self.session.delete(alert)
        self.session.commit()


@dataclass(frozen=True)
class TransactionSnapshot:
    id: int
    user_id: int
    category_id: Optional[int]
    date: date
    amount: Decimal
    currency: str
    version: int

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            user_id=txn.user_id,
            category_id=txn.category_id,
            date=txn.date,
            amount=to_money(txn.amount),
            currency=txn.currency,
            version=txn.version,
        )


@dataclass(frozen=True)
class SpendDelta:
    user_id: int
    category_id: Optional[int]
    on_date: date
    amount: Decimal
    key: Optional[str] = None
    transaction_id: Optional[int] = None


@dataclass(frozen=True)
class CategorySummary:
    category_id: int
    category_name: str
    limit_amount: Decimal
    spent_amount: Decimal
    progress_percentage: Decimal


@dataclass(frozen=True)
class BudgetSummary:
    budget_id: int
    budget_name: str
    start_date: date
    end_date: date
    status: BudgetStatus
    total_budgeted: Decimal
    total_spent: Decimal
    remaining: Decimal
    categories: list[CategorySummary] = field(default_factory=list)


@dataclass(frozen=True)
class BudgetImpactPreview:
    transaction_id: Optional[int]
    impact_amount: Decimal
    affected_budget_categories: list[BudgetCategory] = field(default_factory=list)

    @property
    def would_exceed(self) -> list[BudgetCategory]:
        return [
            bc
            for bc in self.affected_budget_categories
            if to_money(bc.spent_amount) + self.impact_amount > to_money(bc.limit_amount)
        ]


class SpendAggregator:
    """Owns every write to ``BudgetCategory.spent_amount``.

    Transaction CRUD goes through the incremental ``apply_deltas`` path, each
    delta recorded under an idempotency key. ``recompute`` resums the ledger
    and is the reconciliation pass run by budget evaluation. Both hold the
    per-(budget, category) lock until their commit.
    """

    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or SystemClock()

    def _budget(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.id == budget_id)
            .execution_options(populate_existing=True)
        )
        if budget is None:
            raise NotFound("Budget", budget_id)
        return budget

    def _resum_rows(self, budget: Budget, category_ids: list[int]) -> list[BudgetCategory]:
        with SPEND_LOCKS.hold([(budget.id, category_id) for category_id in category_ids]):
            rows = self.session.scalars(
                select(BudgetCategory)
                .where(
                    BudgetCategory.budget_id == budget.id,
                    BudgetCategory.category_id.in_(category_ids),
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            ).all()
            for row in rows:
                total = sum_transactions(
                    self.session,
                    budget.user_id,
                    row.category_id,
                    budget.start_date,
                    budget.end_date,
                )
                if total < ZERO:
                    logger.warning(
                        f"recompute_negative_total: budget_id={budget.id} "
                        f"category_id={row.category_id} total={total}"
                    )
                row.spent_amount = max(ZERO, total)
            self.session.commit()
        return rows

    def recompute(self, budget_id: int) -> Budget:
        budget = self._budget(budget_id)
        if not budget.categories:
            logger.debug(f"recompute_skipped: budget_id={budget_id} reason=no_categories")
            return budget

        rows = self._resum_rows(budget, [bc.category_id for bc in budget.categories])
        logger.info(f"recompute_done: budget_id={budget.id} categories={len(rows)}")
        return budget

    def recompute_category(self, budget_id: int, category_id: int) -> BudgetCategory:
        """Resum a single budget category from the ledger."""
        budget = self._budget(budget_id)
        if not any(bc.category_id == category_id for bc in budget.categories):
            raise NotFound("Budget category", category_id)
        (row,) = self._resum_rows(budget, [category_id])
        logger.info(
            f"recompute_category_done: budget_id={budget.id} category_id={category_id} "
            f"spent={to_money(row.spent_amount)}"
        )
        return row

    def recompute_user_budgets(self, user_id: int) -> int:
        budget_ids = self.session.scalars(
            select(Budget.id).where(
                Budget.user_id == user_id, Budget.status == BudgetStatus.active
            )
        ).all()
        count = 0
        for budget_id in budget_ids:
            try:
                self.recompute(budget_id)
                count += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"recompute_failed: budget_id={budget_id}")
        logger.info(
            f"recompute_user_done: user_id={user_id} budgets={count}/{len(budget_ids)}"
        )
        return count

    def _target_rows(self, delta: SpendDelta) -> list[tuple[int, int]]:
        if delta.category_id is None:
            return []
        stmt = (
            select(BudgetCategory.id, BudgetCategory.budget_id)
            .join(Budget, Budget.id == BudgetCategory.budget_id)
            .where(
                Budget.user_id == delta.user_id,
                Budget.status == BudgetStatus.active,
                Budget.start_date <= delta.on_date,
                Budget.end_date >= delta.on_date,
                BudgetCategory.category_id == delta.category_id,
            )
        )
        return [(row.id, row.budget_id) for row in self.session.execute(stmt)]

    def _already_applied(self, key: str) -> bool:
        return (
            self.session.scalar(select(AppliedDelta.id).where(AppliedDelta.key == key))
            is not None
        )

    @staticmethod
    def _add_to_row(row: BudgetCategory, amount: Decimal) -> None:
        current = to_money(row.spent_amount)
        new_amount = current + amount
        if new_amount < ZERO:
            # the ledger and the stored aggregate have diverged
            logger.warning(
                f"spend_floor_hit: budget_id={row.budget_id} category_id={row.category_id} "
                f"spent={current} delta={amount}"
            )
            new_amount = ZERO
        row.spent_amount = new_amount

    def apply_deltas(self, deltas: Iterable[SpendDelta]) -> int:
        """Apply deltas to matching ACTIVE budgets in one commit.

        Returns the number of budget category rows touched. Deltas whose key
        was already recorded are skipped.
        """
        staged: list[tuple[SpendDelta, list[tuple[int, int]]]] = []
        seen_keys: set[str] = set()
        for delta in deltas:
            if delta.key is not None:
                if delta.key in seen_keys or self._already_applied(delta.key):
                    logger.info(f"delta_skipped: key={delta.key} reason=already_applied")
                    continue
                seen_keys.add(delta.key)
            staged.append((delta, self._target_rows(delta)))

        lock_keys = [
            (budget_id, delta.category_id)
            for delta, targets in staged
            for _, budget_id in targets
        ]
        touched = 0
        with SPEND_LOCKS.hold(lock_keys):
            for delta, targets in staged:
                if targets:
                    rows = self.session.scalars(
                        select(BudgetCategory)
                        .where(BudgetCategory.id.in_([row_id for row_id, _ in targets]))
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    ).all()
                    for row in rows:
                        self._add_to_row(row, delta.amount)
                        touched += 1
                if delta.key is not None:
                    self.session.add(
                        AppliedDelta(
                            key=delta.key,
                            transaction_id=delta.transaction_id,
                            amount=delta.amount,
                        )
                    )
            self.session.commit()
        return touched

    def apply_delta(
        self,
        user_id: int,
        category_id: Optional[int],
        on_date: date,
        amount_delta: Decimal,
        *,
        idempotency_key: Optional[str] = None,
    ) -> int:
        return self.apply_deltas(
            [
                SpendDelta(
                    user_id=user_id,
                    category_id=category_id,
                    on_date=on_date,
                    amount=to_money(amount_delta),
                    key=idempotency_key,
                )
            ]
        )

    def on_transaction_created(self, txn: Transaction) -> int:
        return self.apply_deltas(
            [
                SpendDelta(
                    user_id=txn.user_id,
                    category_id=txn.category_id,
                    on_date=txn.date,
                    amount=to_money(txn.amount),
                    key=f"{txn.id}:create",
                    transaction_id=txn.id,
                )
            ]
        )

    def on_transaction_updated(
        self, before: TransactionSnapshot, txn: Transaction
    ) -> int:
        # old and new sides are independent: date and category may both move
        prefix = f"{txn.id}:update:{txn.version}"
        return self.apply_deltas(
            [
                SpendDelta(
                    user_id=before.user_id,
                    category_id=before.category_id,
                    on_date=before.date,
                    amount=-before.amount,
                    key=f"{prefix}:remove",
                    transaction_id=txn.id,
                ),
                SpendDelta(
                    user_id=txn.user_id,
                    category_id=txn.category_id,
                    on_date=txn.date,
                    amount=to_money(txn.amount),
                    key=f"{prefix}:add",
                    transaction_id=txn.id,
                ),
            ]
        )

    def on_transaction_deleted(self, before: TransactionSnapshot) -> int:
        return self.apply_deltas(
            [
                SpendDelta(
                    user_id=before.user_id,
                    category_id=before.category_id,
                    on_date=before.date,
                    amount=-before.amount,
                    key=f"{before.id}:delete",
                    transaction_id=before.id,
                )
            ]
        )

    def affected_budget_categories(self, txn: Transaction) -> list[BudgetCategory]:
        if txn.category_id is None:
            return []
        stmt = (
            select(BudgetCategory)
            .join(Budget, Budget.id == BudgetCategory.budget_id)
            .where(
                Budget.user_id == txn.user_id,
                Budget.status == BudgetStatus.active,
                Budget.start_date <= txn.date,
                Budget.end_date >= txn.date,
                BudgetCategory.category_id == txn.category_id,
            )
            .order_by(BudgetCategory.id)
        )
        return self.session.scalars(stmt).all()

    def preview_transaction_impact(self, txn: Transaction) -> BudgetImpactPreview:
        """What a transaction would do to budgets, without writing anything.

        ``txn`` need not be persisted.
        """
        return BudgetImpactPreview(
            transaction_id=txn.id,
            impact_amount=to_money(txn.amount),
            affected_budget_categories=list(self.affected_budget_categories(txn)),
        )

    def find_exceeded_categories(self, budget_id: int) -> list[BudgetCategory]:
        if self.session.get(Budget, budget_id) is None:
            raise NotFound("Budget", budget_id)
        stmt = (
            select(BudgetCategory)
            .options(joinedload(BudgetCategory.category))
            .where(
                BudgetCategory.budget_id == budget_id,
                BudgetCategory.spent_amount > BudgetCategory.limit_amount,
            )
            .order_by(BudgetCategory.id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def summary(self, budget_id: int) -> BudgetSummary:
        budget = self._budget(budget_id)
        categories: list[CategorySummary] = []
        total_budgeted = ZERO
        total_spent = ZERO
        for bc in budget.categories:
            limit = to_money(bc.limit_amount)
            spent = to_money(bc.spent_amount)
            total_budgeted += limit
            total_spent += spent
            progress = (
                (spent / limit * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
                if limit > ZERO
                else ZERO
            )
            categories.append(
                CategorySummary(
                    category_id=bc.category_id,
                    category_name=bc.category.name if bc.category else "",
                    limit_amount=limit,
                    spent_amount=spent,
                    progress_percentage=progress,
                )
            )
        return BudgetSummary(
            budget_id=budget.id,
            budget_name=budget.name,
            start_date=budget.start_date,
            end_date=budget.end_date,
            status=budget.status,
            total_budgeted=total_budgeted,
            total_spent=total_spent,
            remaining=total_budgeted - total_spent,
            categories=categories,
        )


_CONDITIONS: dict[ConditionType, tuple[Callable[[Decimal, Decimal], bool], str]] = {
    ConditionType.greater_than: (operator.gt, "exceeded"),
    ConditionType.less_than: (operator.lt, "fell below"),
    ConditionType.equal_to: (operator.eq, "reached exactly"),
}

_missing_conditions = set(ConditionType) - set(_CONDITIONS)
if _missing_conditions:
    raise RuntimeError(f"Unhandled condition types: {_missing_conditions}")


def is_violated(condition: ConditionType, total: Decimal, threshold: Decimal) -> bool:
    compare, _ = _CONDITIONS[condition]
    return compare(to_money(total), to_money(threshold))


def rule_alert_message(rule: Rule, total: Decimal) -> str:
    category_name = rule.category.name if rule.category else "all categories"
    _, direction = _CONDITIONS[rule.condition_type]
    return (
        f"Rule '{rule.name}' violated: spending in {category_name} {direction} "
        f"the threshold of {format_amount(rule.threshold)} "
        f"(current: {format_amount(total)})"
    )


class ThresholdRuleEvaluator:
    def __init__(
        self,
        session: Session,
        clock: Optional[Clock] = None,
        dispatcher: Optional[AlertDispatcher] = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or AlertDispatcher(session)

    def window_total(self, rule: Rule) -> tuple[Period, Decimal]:
        window = rolling_window(rule.period, self.clock.today())
        total = sum_transactions(
            self.session, rule.user_id, rule.category_id, window.start, window.end
        )
        return window, total

    def _evaluate(self, rule: Rule) -> Optional[DispatchResult]:
        if rule.category_id is not None and rule.category is None:
            raise NotFound("Category", rule.category_id)
        window, total = self.window_total(rule)
        logger.debug(
            f"rule_evaluated: rule_id={rule.id} window={window.start}..{window.end} total={total}"
        )
        if not is_violated(rule.condition_type, total, rule.threshold):
            return None
        return self.dispatcher.dispatch(
            rule.user_id,
            SourceType.rule,
            rule.id,
            rule_alert_message(rule, total),
            kind="rule_violation",
        )

    def evaluate_rule(self, rule_id: int) -> Optional[DispatchResult]:
        """Evaluate one rule; ``None`` means the condition does not hold."""
        rule = _get_owned(self.session, Rule, rule_id, None, "Rule")
        return self._evaluate(rule)

    def _evaluate_many(self, rules: list[Rule], context: str) -> int:
        created = 0
        for rule in rules:
            try:
                result = self._evaluate(rule)
            except Exception:
                self.session.rollback()
                logger.exception(f"rule_failed: rule_id={rule.id} context={context}")
                continue
            if result is not None and result.created:
                created += 1
        logger.info(
            f"rules_evaluated: context={context} rules={len(rules)} alerts={created}"
        )
        return created

    def _active_rules(self, user_id: int) -> list[Rule]:
        stmt = (
            select(Rule)
            .options(joinedload(Rule.category))
            .where(Rule.user_id == user_id, Rule.active.is_(True))
            .order_by(Rule.id)
        )
        return self.session.scalars(stmt).all()

    def evaluate_rules_for_user(self, user_id: int) -> int:
        return self._evaluate_many(self._active_rules(user_id), f"user:{user_id}")

    def evaluate_rules_for_transaction(self, txn: Transaction) -> int:
        relevant = [
            rule
            for rule in self._active_rules(txn.user_id)
            if rule.category_id is None or rule.category_id == txn.category_id
        ]
        return self._evaluate_many(relevant, f"transaction:{txn.id}")


_STATUS_ORDER = {
    BudgetStatus.upcoming: 0,
    BudgetStatus.active: 1,
    BudgetStatus.completed: 2,
}


def budget_limit_message(budget: Budget, bc: BudgetCategory) -> str:
    return (
        f"Budget '{budget.name}' - Category '{bc.category.name}' has exceeded its limit. "
        f"Limit: {format_amount(bc.limit_amount)}, Spent: {format_amount(bc.spent_amount)}"
    )


def initial_status(start_date: date, today: date) -> BudgetStatus:
    return BudgetStatus.upcoming if start_date > today else BudgetStatus.active


class BudgetLifecycleManager:
    def __init__(
        self,
        session: Session,
        clock: Optional[Clock] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        aggregator: Optional[SpendAggregator] = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or AlertDispatcher(session)
        self.aggregator = aggregator or SpendAggregator(session, self.clock)
        self.settings = get_settings()

    @staticmethod
    def _advance(budget: Budget, status: BudgetStatus) -> None:
        if _STATUS_ORDER[status] < _STATUS_ORDER[budget.status]:
            raise InvalidState(
                f"Budget {budget.id} cannot move from {budget.status.value} to {status.value}"
            )
        budget.status = status

    def _load(self, budget_id: int) -> Budget:
        budget = self.session.get(
            Budget, budget_id, with_for_update=True, populate_existing=True
        )
        if budget is None:
            raise NotFound("Budget", budget_id)
        return budget

    def evaluate_budget(self, budget_id: int) -> BudgetStatus:
        budget = self._load(budget_id)
        today = self.clock.today()

        if budget.status == BudgetStatus.completed:
            logger.debug(f"budget_skipped: budget_id={budget_id} status=COMPLETED")
            return budget.status

        if budget.status == BudgetStatus.upcoming:
            if budget.start_date > today:
                return budget.status
            self._advance(budget, BudgetStatus.active)
            self.session.commit()
            logger.info(f"budget_activated: budget_id={budget_id}")

        self.aggregator.recompute(budget_id)
        exceeded = self.aggregator.find_exceeded_categories(budget_id)
        for bc in exceeded:
            self.dispatcher.dispatch(
                budget.user_id,
                SourceType.budget,
                bc.id,
                budget_limit_message(budget, bc),
                kind="limit_exceeded",
            )
        logger.info(
            f"budget_limits_checked: budget_id={budget_id} exceeded={len(exceeded)}"
        )

        if budget.end_date < today:
            self._advance(budget, BudgetStatus.completed)
            self.session.commit()
            logger.info(f"budget_completed: budget_id={budget_id} reason=period_ended")
            self._log_completion_summary(budget_id)
        return budget.status

    def _log_completion_summary(self, budget_id: int) -> None:
        try:
            summary = self.aggregator.summary(budget_id)
        except Exception:
            logger.exception(f"budget_summary_failed: budget_id={budget_id}")
            return
        logger.info(
            f"budget_summary: budget_id={budget_id} "
            f"total_budgeted={format_amount(summary.total_budgeted)} "
            f"total_spent={format_amount(summary.total_spent)} "
            f"remaining={format_amount(summary.remaining)}"
        )

    def _evaluate_batch(self, budget_ids: list[int], context: str) -> int:
        evaluated = 0
        for budget_id in budget_ids:
            try:
                self.evaluate_budget(budget_id)
                evaluated += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_failed: budget_id={budget_id} context={context}")
        logger.info(
            f"budgets_evaluated: context={context} budgets={evaluated}/{len(budget_ids)}"
        )
        return evaluated

    def open_budget_ids(self, user_id: Optional[int] = None) -> list[int]:
        stmt = select(Budget.id).where(
            Budget.status.in_([BudgetStatus.upcoming, BudgetStatus.active])
        )
        if user_id is not None:
            stmt = stmt.where(Budget.user_id == user_id)
        return self.session.scalars(stmt.order_by(Budget.id)).all()

    def evaluate_user_budgets(self, user_id: int) -> int:
        return self._evaluate_batch(self.open_budget_ids(user_id), f"user:{user_id}")

    def evaluate_all_active_budgets(self) -> int:
        return self._evaluate_batch(self.open_budget_ids(), "all")

    def archive_budget(self, budget_id: int) -> Budget:
        budget = self._load(budget_id)
        if budget.status != BudgetStatus.completed:
            self._advance(budget, BudgetStatus.completed)
            self.session.commit()
            logger.info(f"budget_completed: budget_id={budget_id} reason=archived")
        return budget

    def needs_attention(self, budget: Budget, today: Optional[date] = None) -> bool:
        if budget.status != BudgetStatus.active:
            return False
        today = today or self.clock.today()
        if budget.end_date <= today + timedelta(days=self.settings.attention_days):
            return True
        ratio = self.settings.attention_ratio
        return any(
            bc.limit_amount > ZERO and bc.spent_amount >= bc.limit_amount * ratio
            for bc in budget.categories
        )

    def budgets_needing_attention(self, user_id: int) -> list[Budget]:
        today = self.clock.today()
        budgets = self.session.scalars(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.user_id == user_id, Budget.status == BudgetStatus.active)
            .order_by(Budget.end_date, Budget.id)
        ).all()
        return [b for b in budgets if self.needs_attention(b, today)]

    def approaching_end_ids(self, days: Optional[int] = None) -> list[int]:
        days = self.settings.attention_days if days is None else days
        today = self.clock.today()
        return self.session.scalars(
            select(Budget.id)
            .where(
                Budget.status == BudgetStatus.active,
                Budget.end_date > today,
                Budget.end_date <= today + timedelta(days=days),
            )
            .order_by(Budget.id)
        ).all()

    def evaluate_approaching_end(self, budget_id: int) -> BudgetStatus:
        status = self.evaluate_budget(budget_id)
        self._log_warning_band(budget_id)
        return status

    def evaluate_budgets_approaching_end(self, days: Optional[int] = None) -> int:
        days = self.settings.attention_days if days is None else days
        budget_ids = self.approaching_end_ids(days)
        evaluated = 0
        for budget_id in budget_ids:
            try:
                self.evaluate_approaching_end(budget_id)
                evaluated += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_failed: budget_id={budget_id} context=approaching_end")
        logger.info(f"budgets_approaching_end: days={days} budgets={evaluated}")
        return evaluated

    def _log_warning_band(self, budget_id: int) -> None:
        ratio = self.settings.attention_ratio
        for row in self.aggregator.summary(budget_id).categories:
            if row.limit_amount <= ZERO:
                continue
            used = row.spent_amount / row.limit_amount
            if ratio <= used < 1:
                logger.info(
                    f"budget_category_near_limit: budget_id={budget_id} "
                    f"category={row.category_name} used_pct={row.progress_percentage}"
                )


def goal_completed_message(goal: Goal) -> str:
    return f"Congratulations! You've achieved your goal: {goal.name}"


def goal_risk_message(goal: Goal, days_remaining: int, percent: Decimal) -> str:
    still_needed = to_money(goal.target_amount) - to_money(goal.current_amount)
    return (
        f"Warning: your goal '{goal.name}' is at risk. {days_remaining} days remaining "
        f"with only {percent:.1f}% progress; {format_amount(still_needed)} "
        f"{goal.currency} more is needed to reach the target."
    )


class GoalProgressTracker:
    def __init__(
        self,
        session: Session,
        clock: Optional[Clock] = None,
        dispatcher: Optional[AlertDispatcher] = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or AlertDispatcher(session)
        self.settings = get_settings()

    def update_progress(self, goal_id: int, user_id: int, amount: Decimal) -> Goal:
        amount = to_money(amount)
        if amount < ZERO:
            raise ValidationFailure("Goal contributions cannot be negative")
        with GOAL_LOCKS.hold([(goal_id,)]):
            goal = _get_owned(self.session, Goal, goal_id, user_id, "Goal", for_update=True)
            newly_completed = goal.apply_contribution(amount)
            self.session.commit()
        logger.info(
            f"goal_progress: goal_id={goal.id} amount={amount} current={goal.current_amount}"
        )
        if newly_completed:
            self.dispatcher.dispatch(
                goal.user_id,
                SourceType.goal,
                goal.id,
                goal_completed_message(goal),
                kind="goal_completed",
            )
        self.check_risk(goal)
        return goal

    def check_risk(self, goal: Goal, today: Optional[date] = None) -> Optional[DispatchResult]:
        if goal.completed or goal.target_amount <= ZERO:
            return None
        today = today or self.clock.today()
        days_remaining = (goal.target_date - today).days
        if not 0 < days_remaining <= self.settings.goal_risk_days:
            return None
        percent = to_money(goal.current_amount) * HUNDRED / to_money(goal.target_amount)
        if percent >= self.settings.goal_risk_percent:
            return None
        return self.dispatcher.dispatch(
            goal.user_id,
            SourceType.goal,
            goal.id,
            goal_risk_message(goal, days_remaining, percent),
            kind="goal_at_risk",
        )

    def evaluate_goals_for_user(self, user_id: int) -> int:
        goals = self._goals(user_id)
        today = self.clock.today()
        created = 0
        for goal in goals:
            try:
                result = self.check_risk(goal, today)
            except Exception:
                self.session.rollback()
                logger.exception(f"goal_failed: goal_id={goal.id}")
                continue
            if result is not None and result.created:
                created += 1
        logger.info(f"goals_evaluated: user_id={user_id} goals={len(goals)} alerts={created}")
        return created

    def _goals(self, user_id: int) -> list[Goal]:
        return self.session.scalars(
            select(Goal)
            .where(Goal.user_id == user_id)
            .order_by(Goal.id)
            .execution_options(populate_existing=True)
        ).all()

    @staticmethod
    def links(txn: Transaction, goal: Goal) -> bool:
        return (
            not goal.completed
            and goal.category_id is not None
            and goal.category_id == txn.category_id
            and to_money(txn.amount) > ZERO
            and goal.currency.upper() == txn.currency.upper()
        )

    def process_transaction_for_goals(self, txn: Transaction) -> int:
        if txn.category_id is None:
            return 0
        updated = 0
        for goal in self._goals(txn.user_id):
            if not self.links(txn, goal):
                continue
            try:
                self.update_progress(goal.id, goal.user_id, txn.amount)
                updated += 1
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"goal_progress_failed: goal_id={goal.id} transaction_id={txn.id}"
                )
        return updated

    def sync_transaction_with_goals(
        self, transaction_id: int, user_id: Optional[int] = None
    ) -> int:
        """Feed one stored transaction into the goals it links to.

        For ledger entries the create path never saw, such as imported rows.
        Running it for a transaction that was already counted counts it again.
        """
        txn = _get_owned(self.session, Transaction, transaction_id, user_id, "Transaction")
        updated = self.process_transaction_for_goals(txn)
        logger.info(f"goal_transaction_synced: transaction_id={txn.id} goals={updated}")
        return updated

    def sync_all_transactions_with_goals(self, user_id: int) -> list[Goal]:
        """Reset every goal of the user and replay the whole ledger into them."""
        goals = self._goals(user_id)
        transactions = self.session.scalars(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id)
        ).all()
        for goal in goals:
            goal.reset_progress()
        for txn in transactions:
            if txn.category_id is None:
                continue
            for goal in goals:
                if self.links(txn, goal):
                    goal.apply_contribution(to_money(txn.amount))
        self.session.commit()
        logger.info(
            f"goals_synced: user_id={user_id} transactions={len(transactions)} goals={len(goals)}"
        )
        return goals


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: UserIn) -> User:
        user = User(name=data.name.strip())
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def list_ids(self) -> list[int]:
        return self.session.scalars(select(User.id).order_by(User.id)).all()


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return _get_owned(self.session, Category, category_id, self.user_id, "Category")

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise InvalidState("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name.strip(), type=data.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or SystemClock()
        self.aggregator = SpendAggregator(session, self.clock)

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None:
            _get_owned(self.session, Category, category_id, self.user_id, "Category")

    def get(self, transaction_id: int) -> Transaction:
        return _get_owned(
            self.session, Transaction, transaction_id, self.user_id, "Transaction"
        )

    def list_for_user(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        self._check_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            category_id=data.category_id,
            date=data.date,
            amount=to_money(data.amount),
            currency=data.currency,
            description=data.description,
            version=1,
        )
        self.session.add(txn)
        self.session.flush()
        self.aggregator.on_transaction_created(txn)

        dispatcher = AlertDispatcher(self.session)
        ThresholdRuleEvaluator(self.session, self.clock, dispatcher).evaluate_rules_for_transaction(txn)
        GoalProgressTracker(self.session, self.clock, dispatcher).process_transaction_for_goals(txn)
        return txn

    def preview_impact(self, data: TransactionIn) -> BudgetImpactPreview:
        self._check_category(data.category_id)
        draft = Transaction(
            user_id=self.user_id,
            category_id=data.category_id,
            date=data.date,
            amount=to_money(data.amount),
            currency=data.currency,
        )
        return self.aggregator.preview_transaction_impact(draft)

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_category(data.category_id)
        before = TransactionSnapshot.of(txn)

        txn.category_id = data.category_id
        txn.date = data.date
        txn.amount = to_money(data.amount)
        txn.currency = data.currency
        txn.description = data.description
        txn.version = before.version + 1
        self.session.flush()
        self.aggregator.on_transaction_updated(before, txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        before = TransactionSnapshot.of(txn)
        self.session.delete(txn)
        self.session.flush()
        self.aggregator.on_transaction_deleted(before)


class BudgetService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or SystemClock()
        self.aggregator = SpendAggregator(session, self.clock)

    def get(self, budget_id: int) -> Budget:
        return _get_owned(self.session, Budget, budget_id, self.user_id, "Budget")

    def list_all(self, status: Optional[BudgetStatus] = None) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if status is not None:
            stmt = stmt.where(Budget.status == status)
        return self.session.scalars(stmt).all()

    @staticmethod
    def _check_limit(limit_amount: Decimal) -> Decimal:
        limit = to_money(limit_amount)
        if limit <= ZERO:
            raise ValidationFailure("Limit amount must be positive")
        return limit

    def create(self, data: BudgetIn) -> Budget:
        if data.end_date < data.start_date:
            raise ValidationFailure("End date must not be before start date")
        seen: set[int] = set()
        for item in data.categories:
            if item.category_id in seen:
                raise InvalidState(
                    f"Category {item.category_id} is listed more than once"
                )
            seen.add(item.category_id)
            _get_owned(self.session, Category, item.category_id, self.user_id, "Category")
            self._check_limit(item.limit_amount)

        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            start_date=data.start_date,
            end_date=data.end_date,
            status=initial_status(data.start_date, self.clock.today()),
        )
        budget.categories = [
            BudgetCategory(
                category_id=item.category_id,
                limit_amount=to_money(item.limit_amount),
                spent_amount=ZERO,
            )
            for item in data.categories
        ]
        self.session.add(budget)
        self.session.commit()
        logger.info(
            f"budget_created: budget_id={budget.id} user_id={self.user_id} "
            f"status={budget.status.value} categories={len(data.categories)}"
        )
        if budget.status == BudgetStatus.active:
            self.aggregator.recompute(budget.id)
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        changes_window = data.start_date is not None or data.end_date is not None
        if changes_window and budget.status == BudgetStatus.completed:
            raise InvalidState("Completed budgets cannot change their period")
        start = data.start_date or budget.start_date
        end = data.end_date or budget.end_date
        if end < start:
            raise ValidationFailure("End date must not be before start date")

        if data.name is not None:
            budget.name = data.name.strip()
        if data.description is not None:
            budget.description = data.description
        budget.start_date = start
        budget.end_date = end
        self.session.commit()
        if changes_window and budget.status == BudgetStatus.active:
            self.aggregator.recompute(budget.id)
        return budget

    def _budget_category(self, budget_id: int, category_id: int) -> Optional[BudgetCategory]:
        return self.session.scalar(
            select(BudgetCategory).where(
                BudgetCategory.budget_id == budget_id,
                BudgetCategory.category_id == category_id,
            )
        )

    def add_category_limit(
        self, budget_id: int, category_id: int, limit_amount: Decimal
    ) -> BudgetCategory:
        budget = self.get(budget_id)
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        limit = self._check_limit(limit_amount)
        if self._budget_category(budget.id, category_id) is not None:
            raise InvalidState("Category limit already exists for this budget")
        row = BudgetCategory(
            budget_id=budget.id, category_id=category_id, limit_amount=limit, spent_amount=ZERO
        )
        self.session.add(row)
        self.session.commit()
        if budget.status == BudgetStatus.active:
            self.aggregator.recompute(budget.id)
        return row

    def update_category_limit(
        self, budget_id: int, category_id: int, limit_amount: Decimal
    ) -> BudgetCategory:
        budget = self.get(budget_id)
        row = self._budget_category(budget.id, category_id)
        if row is None:
            raise NotFound("Budget category", category_id)
        row.limit_amount = self._check_limit(limit_amount)
        self.session.commit()
        return row

    def delete_category_limit(self, budget_id: int, category_id: int) -> None:
        budget = self.get(budget_id)
        row = self._budget_category(budget.id, category_id)
        if row is None:
            raise NotFound("Budget category", category_id)
        self.session.delete(row)
        self.session.commit()

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: budget_id={budget_id}")


class RuleService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, rule_id: int) -> Rule:
        return _get_owned(self.session, Rule, rule_id, self.user_id, "Rule")

    def list_all(self, active_only: bool = False) -> list[Rule]:
        stmt = select(Rule).where(Rule.user_id == self.user_id).order_by(Rule.id)
        if active_only:
            stmt = stmt.where(Rule.active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: RuleIn) -> Rule:
        if data.category_id is not None:
            _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        rule = Rule(user_id=self.user_id, **data.model_dump())
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RuleIn) -> Rule:
        rule = self.get(rule_id)
        if data.category_id is not None and data.category_id != rule.category_id:
            _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        for name, value in data.model_dump().items():
            setattr(rule, name, value)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def set_active(self, rule_id: int, active: bool) -> Rule:
        rule = self.get(rule_id)
        rule.active = active
        self.session.commit()
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> Goal:
        return _get_owned(self.session, Goal, goal_id, self.user_id, "Goal")

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.target_date, Goal.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: GoalIn) -> Goal:
        if data.category_id is not None:
            _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            category_id=data.category_id,
            target_amount=to_money(data.target_amount),
            current_amount=ZERO,
            target_date=data.target_date,
            currency=data.currency,
            completed=False,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        if data.category_id is not None:
            _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        goal.name = data.name.strip()
        goal.category_id = data.category_id
        goal.target_amount = to_money(data.target_amount)
        goal.target_date = data.target_date
        goal.currency = data.currency
        self.session.commit()
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()
