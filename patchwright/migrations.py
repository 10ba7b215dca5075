"""
Migration execution.

The applier only depends on the `MigrationExecutor` interface. The local
implementation runs statements against a SQLite database and records
applied migration ids in a ledger table so re-application can be
detected.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterator, List

from .domain import Migration
from .errors import MigrationError

LOG = logging.getLogger(__name__)

LEDGER_TABLE = "_patchwright_migrations"


class MigrationExecutor(ABC):
    """
    Abstract interface for running migrations against a database.
    """

    @abstractmethod
    def is_applied(self, migration_id: str) -> bool:
        """Return True if the migration was already applied."""

    @abstractmethod
    def apply(self, migration: Migration) -> None:
        """
        Run the forward statement and record the migration.

        Raises MigrationError on failure; a failed migration must leave
        the database unchanged.
        """

    @abstractmethod
    def revert(self, migration: Migration) -> None:
        """
        Run the reverse statement and forget the migration.

        Raises MigrationError when the migration has no reverse
        statement or the statement fails.
        """


def split_statements(sql: str) -> Iterator[str]:
    """
    Yield complete SQL statements from a script.

    Trailing text that holds only comments or whitespace is dropped.
    """

    buffer: List[str] = []
    for line in sql.splitlines(keepends=True):
        buffer.append(line)
        candidate = "".join(buffer)
        if sqlite3.complete_statement(candidate):
            yield candidate.strip()
            buffer = []

    rest = "".join(buffer)
    meaningful = [ln for ln in rest.splitlines() if ln.strip() and not ln.strip().startswith("--")]
    if meaningful:
        yield rest.strip()


class SqliteMigrationExecutor(MigrationExecutor):
    """
    Run migrations against a SQLite database file.

    Each apply or revert runs in its own transaction together with the
    ledger update.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        try:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} ("
                "id TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
            )
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def is_applied(self, migration_id: str) -> bool:
        rows = self._query(migration_id, f"SELECT 1 FROM {LEDGER_TABLE} WHERE id = ?", (migration_id,))
        return bool(rows)

    def applied_ids(self) -> List[str]:
        rows = self._query("ledger", f"SELECT id FROM {LEDGER_TABLE} ORDER BY applied_at, id", ())
        return [row[0] for row in rows]

    def _query(self, migration_id: str, sql: str, args: tuple) -> List[tuple]:
        conn = None
        try:
            conn = self._connect()
            return conn.execute(sql, args).fetchall()
        except (sqlite3.Error, OSError) as exc:
            raise MigrationError(f"cannot read migration ledger in {self.db_path}: {exc}", migration_id) from exc
        finally:
            if conn is not None:
                conn.close()

    def apply(self, migration: Migration) -> None:
        LOG.info("Applying migration %s (%s)", migration.id, migration.type)
        self._run(
            migration.id,
            migration.sql_forward,
            f"INSERT INTO {LEDGER_TABLE} (id, applied_at) VALUES (?, ?)",
            (migration.id, datetime.now(timezone.utc).isoformat()),
        )

    def revert(self, migration: Migration) -> None:
        if not migration.reversible:
            raise MigrationError(f"migration {migration.id} has no reverse statement", migration.id)
        LOG.info("Reverting migration %s", migration.id)
        self._run(
            migration.id,
            migration.sql_reverse or "",
            f"DELETE FROM {LEDGER_TABLE} WHERE id = ?",
            (migration.id,),
        )

    def _run(self, migration_id: str, sql: str, ledger_sql: str, ledger_args: tuple) -> None:
        conn = None
        try:
            conn = self._connect()
            conn.execute("BEGIN")
            for statement in split_statements(sql):
                conn.execute(statement)
            conn.execute(ledger_sql, ledger_args)
            conn.execute("COMMIT")
        except (sqlite3.Error, OSError) as exc:
            if conn is not None and conn.in_transaction:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_exc:
                    LOG.error("Could not roll back migration %s: %s", migration_id, rollback_exc)
            raise MigrationError(f"migration {migration_id} failed: {exc}", migration_id) from exc
        finally:
            if conn is not None:
                conn.close()
