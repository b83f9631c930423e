"""Background maintenance jobs."""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from digivault.core.settings import settings
from digivault.db.session import SessionLocal
from digivault.services.delivery import DeliveryOrchestrator

logger = logging.getLogger(__name__)

scheduler: Optional[BackgroundScheduler] = None


def init_scheduler() -> None:
    global scheduler

    if scheduler is not None or settings.cleanup_interval_minutes <= 0:
        return

    scheduler = BackgroundScheduler()
    scheduler.configure(job_defaults={"coalesce": True, "max_instances": 1})
    scheduler.add_job(
        cleanup_expired_access,
        "interval",
        minutes=settings.cleanup_interval_minutes,
        id="cleanup_expired_access",
        name="Expire stale grants and licenses",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Background scheduler started: cleanup every %s minutes", settings.cleanup_interval_minutes)


def cleanup_expired_access() -> None:
    db = SessionLocal()
    try:
        DeliveryOrchestrator(db).cleanup_expired()
    except Exception:
        logger.exception("Scheduled cleanup failed")
    finally:
        db.close()


def shutdown_scheduler() -> None:
    global scheduler

    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("Background scheduler stopped")
    scheduler = None
