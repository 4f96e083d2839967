"""Read-only SQLite adapter.

Executes SqlPayload entries against a SQLite database file opened in
read-only mode (URI mode=ro), so even a payload that slipped past validation
cannot write. Each call uses its own connection in a worker thread
(asyncio.to_thread); cancelling the awaiting task interrupts the running
statement through Connection.interrupt().
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any

from keystone.adapters.base import SourceAdapter
from keystone.engine.payloads import SqlPayload
from keystone.errors import SourceTimeout, SourceUnavailable, TransientNetworkError
from keystone.models import SourceKind

logger = logging.getLogger(__name__)

# sqlite3 OperationalError messages that clear up on their own
_TRANSIENT_MESSAGES = ("database is locked", "database is busy", "disk i/o error")


class SqlSourceAdapter(SourceAdapter):
    """Runs rendered SELECT statements against SQLite.

    Args:
        database: Path to the SQLite database file
    """

    kind = SourceKind.SQL

    def __init__(self, database: str | Path) -> None:
        self.database = Path(database)

    def _connect(self, timeout: float) -> sqlite3.Connection:
        uri = f"file:{self.database.as_posix()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    async def execute(self, payload: SqlPayload, timeout: float) -> list[dict[str, Any]]:
        """Render and run the payload.

        Raises:
            SourceTimeout: Statement interrupted by the deadline
            TransientNetworkError: Database locked or busy
            SourceUnavailable: Missing database, missing table, bad SQL
        """
        sql, params = payload.render()
        logger.debug("SQL %s params=%s", sql, params)

        try:
            conn = await asyncio.to_thread(self._connect, timeout)
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Cannot open database {self.database}: {e}") from e

        def _run() -> list[dict[str, Any]]:
            try:
                cursor = conn.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
            finally:
                conn.close()

        try:
            return await asyncio.to_thread(_run)
        except asyncio.CancelledError:
            conn.interrupt()
            raise
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "interrupted" in message:
                raise SourceTimeout(f"Query interrupted: {e}") from e
            if any(m in message for m in _TRANSIENT_MESSAGES):
                raise TransientNetworkError(f"Database busy: {e}") from e
            raise SourceUnavailable(f"Query failed: {e}") from e
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Query failed: {e}") from e
