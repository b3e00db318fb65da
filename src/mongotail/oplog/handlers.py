"""
Handler interface for oplog events.

Implement OpLogHandler and register it with an OpLogTailer; each insert,
update and delete entry matching the tailer's filter is dispatched to the
corresponding method.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

logger = logging.getLogger(__name__)


class OpLogHandler(ABC):
    """
    Callbacks for oplog events.

    Methods may be called from dispatcher worker threads. Exceptions raised
    here are logged and do not stop the tailer.
    """

    @abstractmethod
    def on_insert(self, inserted: Dict[str, Any]) -> None:
        """Called when the tailer receives an insert operation."""

    @abstractmethod
    def on_update(self, updated: Dict[str, Any]) -> None:
        """Called when the tailer receives an update operation."""

    @abstractmethod
    def on_delete(self, deleted: Dict[str, Any]) -> None:
        """Called when the tailer receives a delete operation."""


class LoggingHandler(OpLogHandler):
    """Handler that logs every payload it receives."""

    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def on_insert(self, inserted: Dict[str, Any]) -> None:
        self.log.info(f"Inserted {inserted}")

    def on_update(self, updated: Dict[str, Any]) -> None:
        self.log.info(f"Updated {updated}")

    def on_delete(self, deleted: Dict[str, Any]) -> None:
        self.log.info(f"Deleted {deleted}")
