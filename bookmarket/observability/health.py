from __future__ import annotations

from typing import Dict

from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from bookmarket.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def table_exists(table_name: str) -> bool:
    """Used by startup capability checks for optional tables."""
    try:
        return inspect(engine).has_table(table_name)
    except OperationalError:
        return False
