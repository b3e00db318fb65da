"""
mongotail: resumable MongoDB oplog tailing.
"""

from .oplog import (
    CheckpointError,
    CheckpointStore,
    LogEntry,
    LoggingHandler,
    MongoCheckpointStore,
    MongotailError,
    MultipleCheckpointsError,
    Operation,
    OpLogHandler,
    OpLogSource,
    OpLogTailer,
    SqlCheckpointStore,
    TailerCheckpoint,
    TailerConfig,
    TailerError,
    TailerState,
)

__version__ = "0.1.0"

__all__ = [
    "CheckpointError",
    "CheckpointStore",
    "LogEntry",
    "LoggingHandler",
    "MongoCheckpointStore",
    "MongotailError",
    "MultipleCheckpointsError",
    "Operation",
    "OpLogHandler",
    "OpLogSource",
    "OpLogTailer",
    "SqlCheckpointStore",
    "TailerCheckpoint",
    "TailerConfig",
    "TailerError",
    "TailerState",
]
