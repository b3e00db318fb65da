"""
Data model for oplog tailing.

Positions are native oplog timestamps (``bson.Timestamp``): seconds since
the epoch in the high 32 bits and an ordinal increment in the low 32 bits.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from bson import Timestamp


class Operation(str, Enum):
    """Oplog operation kinds delivered to handlers."""
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"

    @classmethod
    def from_code(cls, code: Optional[str]) -> Optional["Operation"]:
        """Map an oplog ``op`` code to an Operation, None if unrecognized."""
        try:
            return cls(code)
        except ValueError:
            return None


def timestamp_now() -> Timestamp:
    """Current wall-clock time as an oplog timestamp with increment 0."""
    return Timestamp(int(time.time()), 0)


def timestamp_from_datetime(value: datetime) -> Timestamp:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return Timestamp(int(value.timestamp()), 0)


def timestamp_to_int(ts: Timestamp) -> int:
    """Pack a timestamp into a single ordered 64-bit integer."""
    return (ts.time << 32) | ts.inc


def int_to_timestamp(value: int) -> Timestamp:
    return Timestamp(value >> 32, value & 0xFFFFFFFF)


@dataclass(frozen=True)
class TailerCheckpoint:
    """
    Resume position for one (filter_regex, label) pair.

    The durable copy lives in a CheckpointStore; a tailer keeps its own
    in-memory instance and replaces it as the position advances.
    """
    filter_regex: str
    label: str
    position: Timestamp

    def advanced_to(self, position: Timestamp) -> "TailerCheckpoint":
        """Return a copy moved to ``position`` (never backwards)."""
        if position <= self.position:
            return self
        return replace(self, position=position)

    def to_document(self) -> Dict[str, Any]:
        """Document layout used by the MongoDB checkpoint collection."""
        return {
            "filterRegex": self.filter_regex,
            "label": self.label,
            "startReadingFromTime": self.position,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "TailerCheckpoint":
        return cls(
            filter_regex=doc["filterRegex"],
            label=doc["label"],
            position=doc["startReadingFromTime"],
        )

    def describe(self) -> Dict[str, Any]:
        """JSON-friendly summary (status output, log context)."""
        return {
            "filter_regex": self.filter_regex,
            "label": self.label,
            "position": {"t": self.position.time, "i": self.position.inc},
            "position_time": self.position.as_datetime().isoformat(),
        }


@dataclass(frozen=True)
class LogEntry:
    """A single oplog entry, as read from ``local.oplog.rs``."""
    position: Timestamp
    operation: str
    namespace: str
    document_id: Any = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[Operation]:
        return Operation.from_code(self.operation)

    @classmethod
    def from_oplog(cls, doc: Dict[str, Any]) -> "LogEntry":
        """
        Build an entry from a raw oplog document.

        Args:
            doc: Oplog document with ``ts``, ``op``, ``ns``, ``o`` and,
                 for updates, ``o2`` (the target document reference)

        Returns:
            LogEntry with the payload taken from ``o`` unmodified
        """
        payload = doc.get("o") or {}
        target = doc.get("o2") or {}
        document_id = target.get("_id") if isinstance(target, dict) else None
        if document_id is None and isinstance(payload, dict):
            document_id = payload.get("_id")
        return cls(
            position=doc["ts"],
            operation=doc.get("op", ""),
            namespace=doc.get("ns", ""),
            document_id=document_id,
            payload=payload,
        )
