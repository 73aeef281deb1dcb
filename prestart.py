import logging
import time

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ga4_relay.core.config import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_TRIES = 60
WAIT_SECONDS = 1

# Last-resort schema, kept in step with the first alembic revision
EMERGENCY_DDL = (
    """
    CREATE TABLE IF NOT EXISTS ga4_events (
        id bigserial PRIMARY KEY,
        event_name varchar(255) NOT NULL DEFAULT '',
        monitor_status varchar(20) NOT NULL
            CHECK (monitor_status in ('allowed','denied','bot_detected','error')),
        queue_status varchar(20)
            CHECK (queue_status is null or queue_status in ('pending','processing','completed','failed')),
        original_payload text,
        original_headers text,
        final_payload text,
        final_headers text,
        transmission_method varchar(20),
        was_originally_encrypted boolean NOT NULL DEFAULT false,
        final_payload_encrypted boolean NOT NULL DEFAULT false,
        retry_count integer NOT NULL DEFAULT 0,
        error_message text,
        reason text,
        ip_address varchar(45),
        user_agent text,
        url text,
        referrer text,
        consent_given boolean,
        batch_size integer,
        processing_time_ms integer,
        created_at timestamptz NOT NULL DEFAULT now(),
        claimed_at timestamptz,
        processed_at timestamptz,
        CONSTRAINT ck_ga4_events_queue_admitted CHECK (
            (monitor_status = 'allowed' and queue_status is not null)
            or (monitor_status <> 'allowed' and queue_status is null)
        )
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_ga4_events_queue_created ON ga4_events (queue_status, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_ga4_events_created_at ON ga4_events (created_at)",
    "CREATE INDEX IF NOT EXISTS ix_ga4_events_monitor_status ON ga4_events (monitor_status)",
    """
    CREATE TABLE IF NOT EXISTS ga4_job_leases (
        name varchar(100) PRIMARY KEY,
        holder varchar(100) NOT NULL,
        acquired_at timestamptz NOT NULL DEFAULT now(),
        expires_at timestamptz NOT NULL
    )
    """,
)


def _sync_db_url() -> str:
    return settings.database_url.replace("+asyncpg", "+psycopg2")


def check_db_connection() -> bool:
    """Ensure database is reachable before running migrations."""
    engine = create_engine(_sync_db_url())
    for _ in range(MAX_TRIES):
        try:
            with engine.connect():
                logger.info("Database connection successful.")
                return True
        except OperationalError:
            logger.info("Database not ready yet, waiting %s second(s)...", WAIT_SECONDS)
            time.sleep(WAIT_SECONDS)
    logger.error("Could not connect to the database after multiple attempts.")
    return False


def run_migrations() -> None:
    logger.info("Running database migrations...")
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("script_location", "migrations")
    alembic_cfg.set_main_option("sqlalchemy.url", _sync_db_url())
    try:
        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations applied successfully.")
    except SQLAlchemyError as exc:
        logger.error("Alembic migrations failed: %s", exc)
        logger.info("Attempting emergency bootstrap for ga4_events...")
        emergency_bootstrap_tables()
        logger.info("Emergency table creation successful.")


def emergency_bootstrap_tables() -> None:
    engine = create_engine(_sync_db_url())
    with engine.begin() as conn:
        for statement in EMERGENCY_DDL:
            conn.execute(text(statement))


if __name__ == "__main__":
    if check_db_connection():
        run_migrations()
