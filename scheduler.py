import logging
import threading
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from periods import Clock, SystemClock
from services import (
    BudgetLifecycleManager,
    GoalProgressTracker,
    ThresholdRuleEvaluator,
    UserService,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class EvaluationRunner:
    """Fans evaluation out over every user or budget.

    Each entity runs in its own ``session_scope``; a failure is logged and the
    batch moves on. Setting ``stop_event`` abandons the entities not started
    yet, already committed ones stay committed.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.stop_event = threading.Event()

    def _user_ids(self) -> list[int]:
        with session_scope(self.session_factory) as session:
            return list(UserService(session).list_ids())

    def _each(
        self, job: str, entity_ids: list[int], work: Callable[[Session, int], object]
    ) -> int:
        processed = 0
        for entity_id in entity_ids:
            if self.stop_event.is_set():
                logger.info(
                    f"{job}: cancelled processed={processed} "
                    f"remaining={len(entity_ids) - processed}"
                )
                break
            try:
                with session_scope(self.session_factory) as session:
                    work(session, entity_id)
                processed += 1
            except Exception:
                logger.exception(f"{job}: entity_id={entity_id} failed")
        logger.info(f"{job}: processed={processed}/{len(entity_ids)}")
        return processed

    def run_rules_for_all_users(self) -> int:
        return self._each(
            "rules_batch",
            self._user_ids(),
            lambda session, user_id: ThresholdRuleEvaluator(
                session, self.clock
            ).evaluate_rules_for_user(user_id),
        )

    def run_budgets_for_all_users(self) -> int:
        with session_scope(self.session_factory) as session:
            budget_ids = list(BudgetLifecycleManager(session, self.clock).open_budget_ids())
        return self._each(
            "budgets_batch",
            budget_ids,
            lambda session, budget_id: BudgetLifecycleManager(
                session, self.clock
            ).evaluate_budget(budget_id),
        )

    def run_goals_for_all_users(self) -> int:
        return self._each(
            "goals_batch",
            self._user_ids(),
            lambda session, user_id: GoalProgressTracker(
                session, self.clock
            ).evaluate_goals_for_user(user_id),
        )

    def run_budgets_approaching_end(self, days: Optional[int] = None) -> int:
        with session_scope(self.session_factory) as session:
            budget_ids = list(
                BudgetLifecycleManager(session, self.clock).approaching_end_ids(days)
            )
        return self._each(
            "approaching_end_batch",
            budget_ids,
            lambda session, budget_id: BudgetLifecycleManager(
                session, self.clock
            ).evaluate_approaching_end(budget_id),
        )

    def daily(self) -> dict[str, int]:
        return {
            "rules": self.run_rules_for_all_users(),
            "budgets": self.run_budgets_for_all_users(),
        }

    def weekly(self) -> dict[str, int]:
        counts = self.daily()
        counts["goals"] = self.run_goals_for_all_users()
        return counts

    def monthly(self) -> dict[str, int]:
        return self.daily()


# (job id, runner method, cron fields)
JOBS: list[tuple[str, str, dict[str, object]]] = [
    ("evaluation_daily", "daily", {"hour": 6, "minute": 0}),
    ("goals_daily", "run_goals_for_all_users", {"hour": 9, "minute": 0}),
    ("evaluation_weekly", "weekly", {"day_of_week": "sun", "hour": 8, "minute": 0}),
    ("evaluation_monthly", "monthly", {"day": 1, "hour": 9, "minute": 0}),
    ("budgets_approaching_end", "run_budgets_approaching_end", {"hour": 14, "minute": 0}),
]


class SchedulerManager:
    def __init__(self, runner: Optional[EvaluationRunner] = None) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.runner = runner or EvaluationRunner()

    def _run_job(self, method: str, source: str = "manual") -> object:
        logger.info(f"scheduler_run: job={method} source={source}")
        result = getattr(self.runner, method)()
        logger.info(f"scheduler_run: job={method} source={source} result={result}")
        return result

    def start(self) -> None:
        self.runner.stop_event.clear()
        for job_id, method, fields in JOBS:
            self.scheduler.add_job(
                self._run_job,
                CronTrigger(timezone=self.timezone, **fields),
                args=[method, job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=3600,
            )
        self.scheduler.start()
        logger.info(f"Scheduler started with jobs={[job_id for job_id, _, _ in JOBS]}")

    def stop(self) -> None:
        self.runner.stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
