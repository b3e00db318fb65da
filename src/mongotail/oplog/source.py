"""
Oplog cursor factory.
"""

import logging
from typing import Any, Dict, Optional

import pymongo
from pymongo import ASCENDING, CursorType, MongoClient
from pymongo.errors import PyMongoError

from .errors import SourceUnavailableError

logger = logging.getLogger(__name__)


class OpLogSource:
    """
    Opens tailable cursors over a replica set oplog.

    Example:
        >>> source = OpLogSource.from_url("mongodb://localhost:27017/?replicaSet=rs0")
        >>> cursor = source.open_cursor({"ts": {"$gt": checkpoint.position}})
    """

    def __init__(
        self,
        client: MongoClient,
        database: str = "local",
        collection: str = "oplog.rs"
    ):
        self.client = client
        self.collection = client[database][collection]

    @classmethod
    def from_url(
        cls,
        url: str,
        connect_timeout_ms: int = 10000,
        server_selection_timeout_ms: int = 10000
    ) -> "OpLogSource":
        """Create a source with its own MongoClient."""
        # pymongo.MongoClient looked up at call time so tests can monkeypatch it
        client = pymongo.MongoClient(
            url,
            connectTimeoutMS=connect_timeout_ms,
            serverSelectionTimeoutMS=server_selection_timeout_ms
        )
        return cls(client)

    def ping(self) -> None:
        """
        Verify the server is reachable.

        Raises:
            SourceUnavailableError: If the server cannot be reached
        """
        try:
            self.client.admin.command("ping")
        except PyMongoError as e:
            logger.error(f"Can't open connection to log source: {e}")
            raise SourceUnavailableError(f"Can't open connection to log source: {e}") from e

    def open_cursor(self, selector: Dict[str, Any], await_time_ms: Optional[int] = None):
        """
        Open a tailable, await-data cursor in natural (arrival) order.

        Args:
            selector: Oplog predicate
            await_time_ms: Bound on each server-side wait for new entries;
                           None leaves the server default

        Returns:
            pymongo Cursor
        """
        cursor = self.collection.find(
            selector,
            cursor_type=CursorType.TAILABLE_AWAIT
        ).sort("$natural", ASCENDING)
        if await_time_ms is not None:
            cursor = cursor.max_await_time_ms(await_time_ms)
        logger.debug(
            "Opened oplog cursor",
            extra={"selector": selector, "await_time_ms": await_time_ms}
        )
        return cursor

    def close(self) -> None:
        self.client.close()
