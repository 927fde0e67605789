import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from src import config
from src.api.exception_handlers import register_exception_handlers
from src.api.routes.routes import router
from src.infrastructure.db.session import engine
from src.infrastructure.db.models import Base

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def wait_for_database(db_engine: Engine) -> None:
    """Block until the database answers, up to DB_CONNECT_MAX_RETRIES attempts."""
    max_retries = config.DB_CONNECT_MAX_RETRIES
    delay = config.DB_CONNECT_RETRY_DELAY

    for attempt in range(1, max_retries + 1):
        try:
            with db_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database reachable. url=%s", db_engine.url.render_as_string(hide_password=True))
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception("Database unreachable, giving up. attempts=%s", max_retries)
                raise
            logger.warning(
                "Database not ready. attempt=%s/%s retry_in=%.1fs",
                attempt,
                max_retries,
                delay,
            )
            time.sleep(delay)


def create_app() -> FastAPI:
    application = FastAPI(title="Ticketing Core")
    application.include_router(router)
    register_exception_handlers(application)

    @application.on_event("startup")
    def on_startup() -> None:
        wait_for_database(engine)
        Base.metadata.create_all(bind=engine)

    return application


app = create_app()
