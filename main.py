from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import InvalidState, NotFound, SpendGuardError, ValidationFailure
from models import BudgetStatus, User
from periods import Clock, SystemClock
from scheduler import SchedulerManager
from schemas import (
    AlertOut,
    BudgetCategoryOut,
    BudgetImpactOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryLimitIn,
    CategoryOut,
    GoalIn,
    GoalOut,
    ProgressIn,
    RuleIn,
    RuleOut,
    TransactionIn,
    TransactionOut,
    UserIn,
    UserOut,
)
from services import (
    AlertService,
    BudgetLifecycleManager,
    BudgetService,
    BudgetSummary,
    CategoryService,
    GoalProgressTracker,
    GoalService,
    RuleService,
    SpendAggregator,
    ThresholdRuleEvaluator,
    TransactionService,
    UserService,
)


app = FastAPI(title="SpendGuard")

_ERROR_STATUS = {
    NotFound: 404,
    InvalidState: 409,
    ValidationFailure: 400,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return SystemClock()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(SpendGuardError)
def spendguard_error_handler(request: Request, exc: SpendGuardError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _owned_user(db: Session, user_id: int) -> int:
    if db.get(User, user_id) is None:
        raise NotFound("User", user_id)
    return user_id


# Users and categories


@app.post("/users", response_model=UserOut, status_code=201)
def create_user(payload: UserIn, db: Session = Depends(get_db)):
    return UserService(db).create(payload)


@app.get("/users/{user_id}/categories", response_model=List[CategoryOut])
def list_categories(user_id: int, db: Session = Depends(get_db)):
    return CategoryService(db, _owned_user(db, user_id)).list_all()


@app.post("/users/{user_id}/categories", response_model=CategoryOut, status_code=201)
def create_category(user_id: int, payload: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db, _owned_user(db, user_id)).create(payload)


# Transactions


@app.get("/users/{user_id}/transactions", response_model=List[TransactionOut])
def list_transactions(user_id: int, db: Session = Depends(get_db)):
    return TransactionService(db, _owned_user(db, user_id)).list_for_user()


@app.post("/users/{user_id}/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    user_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return TransactionService(db, _owned_user(db, user_id), clock).create(payload)


@app.post("/users/{user_id}/transactions/impact", response_model=BudgetImpactOut)
def preview_transaction_impact(
    user_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    preview = TransactionService(db, _owned_user(db, user_id), clock).preview_impact(payload)
    return BudgetImpactOut.model_validate(preview)


@app.put("/users/{user_id}/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    user_id: int,
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return TransactionService(db, _owned_user(db, user_id), clock).update(
        transaction_id, payload
    )


@app.delete("/users/{user_id}/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    user_id: int,
    transaction_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    TransactionService(db, _owned_user(db, user_id), clock).delete(transaction_id)
    return Response(status_code=204)


# Budgets


@app.get("/users/{user_id}/budgets", response_model=List[BudgetOut])
def list_budgets(
    user_id: int, status: Optional[BudgetStatus] = None, db: Session = Depends(get_db)
):
    return BudgetService(db, _owned_user(db, user_id)).list_all(status)


@app.post("/users/{user_id}/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    user_id: int,
    payload: BudgetIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return BudgetService(db, _owned_user(db, user_id), clock).create(payload)


@app.get("/users/{user_id}/budgets/attention", response_model=List[BudgetOut])
def budgets_needing_attention(
    user_id: int, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)
):
    return BudgetLifecycleManager(db, clock).budgets_needing_attention(
        _owned_user(db, user_id)
    )


@app.post("/users/{user_id}/budgets/evaluate")
def evaluate_user_budgets(
    user_id: int, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)
):
    count = BudgetLifecycleManager(db, clock).evaluate_user_budgets(
        _owned_user(db, user_id)
    )
    return {"evaluated": count}


@app.get("/users/{user_id}/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(user_id: int, budget_id: int, db: Session = Depends(get_db)):
    return BudgetService(db, _owned_user(db, user_id)).get(budget_id)


@app.patch("/users/{user_id}/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    user_id: int,
    budget_id: int,
    payload: BudgetUpdateIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return BudgetService(db, _owned_user(db, user_id), clock).update(budget_id, payload)


@app.delete("/users/{user_id}/budgets/{budget_id}", status_code=204)
def delete_budget(user_id: int, budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db, _owned_user(db, user_id)).delete(budget_id)
    return Response(status_code=204)


@app.get("/users/{user_id}/budgets/{budget_id}/summary", response_model=BudgetSummary)
def budget_summary(user_id: int, budget_id: int, db: Session = Depends(get_db)):
    budget = BudgetService(db, _owned_user(db, user_id)).get(budget_id)
    return SpendAggregator(db).summary(budget.id)


@app.post("/users/{user_id}/budgets/{budget_id}/categories", response_model=BudgetOut)
def add_budget_category(
    user_id: int,
    budget_id: int,
    payload: CategoryLimitIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    service = BudgetService(db, _owned_user(db, user_id), clock)
    service.add_category_limit(budget_id, payload.category_id, payload.limit_amount)
    return service.get(budget_id)


@app.put(
    "/users/{user_id}/budgets/{budget_id}/categories/{category_id}",
    response_model=BudgetOut,
)
def update_budget_category(
    user_id: int,
    budget_id: int,
    category_id: int,
    payload: CategoryLimitIn,
    db: Session = Depends(get_db),
):
    service = BudgetService(db, _owned_user(db, user_id))
    service.update_category_limit(budget_id, category_id, payload.limit_amount)
    return service.get(budget_id)


@app.post(
    "/users/{user_id}/budgets/{budget_id}/categories/{category_id}/recompute",
    response_model=BudgetCategoryOut,
)
def recompute_budget_category(
    user_id: int,
    budget_id: int,
    category_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    budget = BudgetService(db, _owned_user(db, user_id)).get(budget_id)
    return SpendAggregator(db, clock).recompute_category(budget.id, category_id)


@app.delete(
    "/users/{user_id}/budgets/{budget_id}/categories/{category_id}", status_code=204
)
def delete_budget_category(
    user_id: int, budget_id: int, category_id: int, db: Session = Depends(get_db)
):
    BudgetService(db, _owned_user(db, user_id)).delete_category_limit(
        budget_id, category_id
    )
    return Response(status_code=204)


@app.post("/users/{user_id}/budgets/{budget_id}/evaluate")
def evaluate_budget(
    user_id: int,
    budget_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    budget = BudgetService(db, _owned_user(db, user_id)).get(budget_id)
    status = BudgetLifecycleManager(db, clock).evaluate_budget(budget.id)
    return {"budget_id": budget.id, "status": status.value}


@app.post("/users/{user_id}/budgets/{budget_id}/archive", response_model=BudgetOut)
def archive_budget(
    user_id: int,
    budget_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    budget = BudgetService(db, _owned_user(db, user_id)).get(budget_id)
    return BudgetLifecycleManager(db, clock).archive_budget(budget.id)


# Rules


@app.get("/users/{user_id}/rules", response_model=List[RuleOut])
def list_rules(user_id: int, db: Session = Depends(get_db)):
    return RuleService(db, _owned_user(db, user_id)).list_all()


@app.post("/users/{user_id}/rules", response_model=RuleOut, status_code=201)
def create_rule(user_id: int, payload: RuleIn, db: Session = Depends(get_db)):
    return RuleService(db, _owned_user(db, user_id)).create(payload)


@app.put("/users/{user_id}/rules/{rule_id}", response_model=RuleOut)
def update_rule(
    user_id: int, rule_id: int, payload: RuleIn, db: Session = Depends(get_db)
):
    return RuleService(db, _owned_user(db, user_id)).update(rule_id, payload)


@app.delete("/users/{user_id}/rules/{rule_id}", status_code=204)
def delete_rule(user_id: int, rule_id: int, db: Session = Depends(get_db)):
    RuleService(db, _owned_user(db, user_id)).delete(rule_id)
    return Response(status_code=204)


@app.post("/users/{user_id}/rules/evaluate")
def evaluate_rules(
    user_id: int, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)
):
    count = ThresholdRuleEvaluator(db, clock).evaluate_rules_for_user(
        _owned_user(db, user_id)
    )
    return {"alerts_created": count}


@app.post("/users/{user_id}/rules/{rule_id}/evaluate")
def evaluate_rule(
    user_id: int,
    rule_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rule = RuleService(db, _owned_user(db, user_id)).get(rule_id)
    result = ThresholdRuleEvaluator(db, clock).evaluate_rule(rule.id)
    return {
        "violated": result is not None,
        "alert_id": result.alert.id if result is not None and result.alert else None,
        "skipped_reason": result.skipped_reason if result is not None else None,
    }


# Goals


@app.get("/users/{user_id}/goals", response_model=List[GoalOut])
def list_goals(user_id: int, db: Session = Depends(get_db)):
    return GoalService(db, _owned_user(db, user_id)).list_all()


@app.post("/users/{user_id}/goals", response_model=GoalOut, status_code=201)
def create_goal(user_id: int, payload: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db, _owned_user(db, user_id)).create(payload)


@app.put("/users/{user_id}/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    user_id: int, goal_id: int, payload: GoalIn, db: Session = Depends(get_db)
):
    return GoalService(db, _owned_user(db, user_id)).update(goal_id, payload)


@app.delete("/users/{user_id}/goals/{goal_id}", status_code=204)
def delete_goal(user_id: int, goal_id: int, db: Session = Depends(get_db)):
    GoalService(db, _owned_user(db, user_id)).delete(goal_id)
    return Response(status_code=204)


@app.post("/users/{user_id}/goals/{goal_id}/progress", response_model=GoalOut)
def update_goal_progress(
    user_id: int,
    goal_id: int,
    payload: ProgressIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return GoalProgressTracker(db, clock).update_progress(
        goal_id, _owned_user(db, user_id), payload.amount
    )


@app.post("/users/{user_id}/goals/sync", response_model=List[GoalOut])
def sync_goals(
    user_id: int, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)
):
    return GoalProgressTracker(db, clock).sync_all_transactions_with_goals(
        _owned_user(db, user_id)
    )


@app.post("/users/{user_id}/goals/sync/transactions/{transaction_id}")
def sync_transaction_with_goals(
    user_id: int,
    transaction_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    count = GoalProgressTracker(db, clock).sync_transaction_with_goals(
        transaction_id, _owned_user(db, user_id)
    )
    return {"goals_updated": count}


# Alerts


@app.get("/users/{user_id}/alerts", response_model=List[AlertOut])
def list_alerts(user_id: int, unread: bool = False, db: Session = Depends(get_db)):
    return AlertService(db, _owned_user(db, user_id)).list(unread_only=unread)


@app.post("/users/{user_id}/alerts/read-all")
def mark_all_alerts_read(user_id: int, db: Session = Depends(get_db)):
    count = AlertService(db, _owned_user(db, user_id)).mark_all_read()
    return {"updated": count}


@app.post("/users/{user_id}/alerts/{alert_id}/read", response_model=AlertOut)
def mark_alert_read(user_id: int, alert_id: int, db: Session = Depends(get_db)):
    return AlertService(db, _owned_user(db, user_id)).mark_read(alert_id)


@app.delete("/users/{user_id}/alerts/{alert_id}", status_code=204)
def delete_alert(user_id: int, alert_id: int, db: Session = Depends(get_db)):
    AlertService(db, _owned_user(db, user_id)).delete(alert_id)
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
