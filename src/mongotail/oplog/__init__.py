"""
Oplog tailing: checkpoints, selectors, dispatch and the tailing loop.
"""

from .checkpoint_store import CheckpointStore, MongoCheckpointStore, SqlCheckpointStore, create_checkpoint_store
from .dispatcher import Dispatcher
from .errors import CheckpointError, MongotailError, MultipleCheckpointsError, SourceUnavailableError, TailerError
from .handlers import LoggingHandler, OpLogHandler
from .models import LogEntry, Operation, TailerCheckpoint
from .selectors import build_checkpoint_selector, build_oplog_selector
from .source import OpLogSource
from .tailer import OpLogTailer, TailerConfig, TailerState

__all__ = [
    "CheckpointError",
    "CheckpointStore",
    "Dispatcher",
    "LogEntry",
    "LoggingHandler",
    "MongoCheckpointStore",
    "MongotailError",
    "MultipleCheckpointsError",
    "Operation",
    "OpLogHandler",
    "OpLogSource",
    "OpLogTailer",
    "SourceUnavailableError",
    "SqlCheckpointStore",
    "TailerCheckpoint",
    "TailerConfig",
    "TailerError",
    "TailerState",
    "build_checkpoint_selector",
    "build_oplog_selector",
    "create_checkpoint_store",
]
