import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from config import get_settings
from database import session_scope
from errors import LedgerError
from models import Wallet
from services import WalletService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def recalculate_everyone(session) -> int:
    user_ids = session.scalars(select(Wallet.user_id).distinct()).all()
    recalculated = 0
    for user_id in user_ids:
        try:
            recalculated += WalletService(session, user_id).recalculate_all()
        except LedgerError as exc:
            logger.error(f"scheduler_recalc: user={user_id} error={exc!r}")
    return recalculated


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = recalculate_everyone(session)
            logger.info(f"scheduler_run: source={source} wallets_recalculated={count}")

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled")
            return
        self._run_job("startup")

        hour, minute = self.settings.recalc_hour, self.settings.recalc_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recalculate_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {hour:02d}:{minute:02d} recalculation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
