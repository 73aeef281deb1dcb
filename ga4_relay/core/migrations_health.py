"""
Alembic state checks run once at startup.

The event queue depends on the ``ga4_events`` and ``ga4_job_leases``
tables; a database left on a forked revision history would silently miss
columns, so multiple heads stop a production start.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger("migrations")

PROJECT_ROOT = Path(os.getenv("PROJECT_ROOT", Path(__file__).resolve().parents[2]))
DEV_ENVS = ("dev", "development", "local", "test")


def _run_alembic(*parts: str) -> Tuple[int, str, str]:
    """Run ``python -m alembic <parts>`` from the project root."""
    cmd = [sys.executable, "-m", "alembic", *parts]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=60,
            cwd=str(PROJECT_ROOT),
        )
    except subprocess.TimeoutExpired:
        return 1, "", "alembic timed out after 60 seconds"
    except OSError as exc:
        return 1, "", f"alembic could not be started: {exc}"
    return result.returncode, result.stdout.strip(), result.stderr.strip()


def get_migration_heads() -> List[str]:
    code, out, err = _run_alembic("heads")
    if code != 0:
        logger.error("Failed to get migration heads", extra={"extra": {"stderr": err}})
        return []
    return [line.split(" ")[0] for line in out.splitlines() if line.strip()]


def get_current_revision() -> str | None:
    code, out, err = _run_alembic("current")
    if code != 0:
        logger.error("Failed to get current revision", extra={"extra": {"stderr": err}})
        return None
    for line in out.splitlines():
        token = line.split(" ")[0].strip()
        if token and not line.startswith("INFO"):
            return token
    return None


def assert_single_head_or_explain() -> None:
    heads = get_migration_heads()
    if len(heads) <= 1:
        if heads:
            logger.info("Migration health: single head", extra={"extra": {"head": heads[0]}})
        else:
            logger.warning("Migration health: no heads found")
        return

    hint = (
        f"Multiple Alembic heads: {', '.join(heads)}. "
        f"Merge them with `alembic merge -m 'merge heads' {' '.join(heads)}` and upgrade."
    )
    env = os.getenv("ENV", "dev").lower()
    if env in DEV_ENVS:
        logger.warning("Migration health: multiple heads, continuing in %s", env,
                       extra={"extra": {"heads": heads, "hint": hint}})
        return

    logger.critical("Refusing to start with multiple migration heads", extra={"extra": {"heads": heads}})
    raise RuntimeError(hint)


def log_migration_status() -> None:
    heads = get_migration_heads()
    current = get_current_revision()
    up_to_date = bool(current) and len(heads) == 1 and current == heads[0]
    logger.info("Migration status: current=%s heads=%s", current, heads,
                extra={"extra": {"current": current, "heads": heads, "up_to_date": up_to_date}})
    if current and not up_to_date and len(heads) == 1:
        logger.warning("Database at %s, latest is %s: upgrade needed", current, heads[0])


def upgrade_to_head() -> bool:
    code, out, err = _run_alembic("upgrade", "head")
    if code != 0:
        logger.error("alembic upgrade head failed", extra={"extra": {"stderr": err[-2000:]}})
        return False
    logger.info("Migrations applied", extra={"extra": {"output": out[-2000:]}})
    return True
