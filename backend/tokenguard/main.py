import asyncio
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError

from tokenguard.api import auth, health
from tokenguard.api.errors import register_error_handlers
from tokenguard.core.config import settings
from tokenguard.core.database import engine
from tokenguard.core.deps import signing_keys

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(health.router)
# bare paths for clients, /auth kept for existing integrations
app.include_router(auth.router)
app.include_router(auth.router, prefix="/auth")


@app.on_event("startup")
async def on_startup() -> None:
    # a missing key is fatal here rather than on the first request
    signing_keys.ensure_ready(production=settings.is_production)
    await wait_for_database()
    if settings.run_migrations_on_startup:
        run_migrations()
    logger.info("%s ready (environment=%s)", settings.app_name, settings.environment)


async def wait_for_database(max_attempts: int = 8, delay_seconds: float = 1.5) -> None:
    attempt = 0
    delay = delay_seconds
    while attempt < max_attempts:
        attempt += 1
        try:
            with engine.connect():
                return
        except OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "Database connection failed after %s attempts.",
                    attempt,
                    exc_info=exc,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1fs.",
                attempt,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 1.5, 10.0)


def run_migrations() -> None:
    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_ini.parent / "alembic"))
    config.set_main_option("sqlalchemy.url", settings.database_url)
    with engine.connect() as connection:
        tables = inspect(connection).get_table_names()
    if "refresh_tokens" in tables and "alembic_version" not in tables:
        logger.warning("Existing tables detected without alembic version; stamping baseline.")
        command.stamp(config, "head")
        return
    command.upgrade(config, "head")
