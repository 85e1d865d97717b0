"""Reader for Android SMS provider databases (mmssms.db snapshots)."""

import sqlite3
from collections.abc import Iterator
from pathlib import Path

from msgvault.errors import SourceUnavailable
from msgvault.logging import source_logger
from msgvault.models import RawMessage, SyncCheckpoint
from msgvault.source.base import InboxSource

logger = source_logger()


class AndroidSmsDatabaseSource(InboxSource):
    """Reads the ``sms`` table of an Android telephony database.

    The database is opened read-only and paged by ``_id`` (keyset
    pagination), so a read can resume from any checkpoint and never holds
    more than one page in memory.

    Example:
        source = AndroidSmsDatabaseSource(Path("mmssms.db"))
        for message in source.read_since(SyncCheckpoint(0)):
            print(message.sequence_id)
    """

    name = "android_db"

    QUERY = """
        SELECT _id, address, body, date, type, read, status, thread_id
        FROM sms
        WHERE _id > ?
        ORDER BY _id ASC
        LIMIT ?
    """

    def __init__(self, db_path: Path, page_size: int = 500) -> None:
        """Initialize the source.

        Args:
            db_path: Path to the mmssms.db file
            page_size: Rows fetched per query
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.db_path = Path(db_path)
        self.page_size = page_size

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise SourceUnavailable(f"Inbox database not found: {self.db_path}")
        uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Cannot open inbox database: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def read_since(self, checkpoint: SyncCheckpoint) -> Iterator[RawMessage]:
        conn = self._connect()
        try:
            last_id = checkpoint.sequence_id
            while True:
                try:
                    rows = conn.execute(self.QUERY, (last_id, self.page_size)).fetchall()
                except sqlite3.Error as e:
                    raise SourceUnavailable(f"Inbox query failed: {e}") from e

                logger.debug("Read inbox page: after_id=%d, rows=%d", last_id, len(rows))

                for row in rows:
                    yield self._to_raw(row)
                    last_id = row["_id"]

                if len(rows) < self.page_size:
                    return
        finally:
            conn.close()

    @staticmethod
    def _to_raw(row: sqlite3.Row) -> RawMessage:
        return RawMessage(
            sequence_id=row["_id"],
            sender=row["address"],
            timestamp=row["date"],
            body=row["body"],
            message_type=row["type"] if row["type"] is not None else 1,
            read=row["read"] or 0,
            status=row["status"] or 0,
            thread_id=row["thread_id"],
        )
