"""SQL surface shared by the custody store and the idempotency table.

Statements are written once with ``{pN}`` placeholders and rendered per backend:
``?`` for sqlite3, ``%s`` for psycopg. Placeholders bind positionally, in order of appearance.
"""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timezone
import json
from pathlib import Path
import re
import sqlite3
from typing import Any, Callable, TypeVar

import psycopg
from psycopg.rows import dict_row


T = TypeVar("T")

_PLACEHOLDER_RE = re.compile(r"\{p(\d+)\}")


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def sqlite_path(locator: str) -> str:
    for prefix in ("sqlite:///", "sqlite://"):
        if locator.startswith(prefix):
            return locator[len(prefix) :]
    return locator


class SqlBackend:
    """Connection factory plus write-transaction runner for one locator."""

    def __init__(self, locator: str | Path) -> None:
        self.locator = str(locator)
        self.kind = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.kind == "sqlite":
            Path(sqlite_path(self.locator)).parent.mkdir(parents=True, exist_ok=True)

    @property
    def is_postgres(self) -> bool:
        return self.kind == "postgres"

    def connect(self) -> Any:
        if self.kind == "sqlite":
            conn = sqlite3.connect(sqlite_path(self.locator), timeout=30)
            conn.row_factory = sqlite3.Row
            return conn
        return psycopg.connect(self.locator, row_factory=dict_row)

    def run_write_tx(self, func: Callable[[Any], T]) -> T:
        """Run ``func(conn)`` in one serialized write transaction."""
        with closing(self.connect()) as conn:
            if self.kind == "sqlite":
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = func(conn)
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
                return result
            with conn.transaction():
                return func(conn)

    def run_read(self, func: Callable[[Any], T]) -> T:
        with closing(self.connect()) as conn:
            return func(conn)

    def render(self, sql: str) -> str:
        marker = "%s" if self.kind == "postgres" else "?"
        return _PLACEHOLDER_RE.sub(marker, sql)

    def query_one(self, conn: Any, sql: str, params: tuple[Any, ...] = ()) -> Any:
        return self._cursor(conn, sql, params).fetchone()

    def query_all(self, conn: Any, sql: str, params: tuple[Any, ...] = ()) -> list[Any]:
        return list(self._cursor(conn, sql, params).fetchall())

    def execute(self, conn: Any, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute one statement and return the affected row count."""
        return int(self._cursor(conn, sql, params).rowcount)

    def execute_script(self, conn: Any, sql: str) -> None:
        if self.kind == "sqlite":
            conn.executescript(sql)
            return
        cur = conn.cursor()
        for statement in (item.strip() for item in sql.split(";")):
            if statement:
                cur.execute(statement)

    def _cursor(self, conn: Any, sql: str, params: tuple[Any, ...]) -> Any:
        rendered = self.render(sql)
        if self.kind == "sqlite":
            return conn.execute(rendered, params)
        cur = conn.cursor()
        cur.execute(rendered, params)
        return cur


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def load_json(text: str | None) -> Any:
    if not text:
        return None
    return json.loads(text)
