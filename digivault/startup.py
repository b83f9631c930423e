import logging

from fastapi import FastAPI

from digivault.core.logging_config import configure_logging
from digivault.db.session import Base, engine
from digivault.models import content, grant, license, product, user  # noqa: F401
from digivault.scheduler import init_scheduler, shutdown_scheduler

logger = logging.getLogger(__name__)


def register_startup(app: FastAPI) -> None:
    @app.on_event("startup")
    def _startup() -> None:
        configure_logging()
        Base.metadata.create_all(bind=engine)
        init_scheduler()
        logger.info("Application started")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        shutdown_scheduler()
