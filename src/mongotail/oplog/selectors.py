"""
Query predicates for the checkpoint collection and the oplog.
"""

import logging
import re
from typing import Any, Dict

from .models import LogEntry, TailerCheckpoint

logger = logging.getLogger(__name__)


def build_checkpoint_selector(checkpoint: TailerCheckpoint) -> Dict[str, Any]:
    """Predicate locating the checkpoint record for a filter/label pair."""
    selector = {
        "$and": [
            {"filterRegex": checkpoint.filter_regex},
            {"label": checkpoint.label},
        ]
    }
    logger.debug(f"Checkpoint selector = {selector}")
    return selector


def build_oplog_selector(checkpoint: TailerCheckpoint) -> Dict[str, Any]:
    """
    Predicate selecting oplog entries after the checkpoint position.

    The namespace is matched with ``$regex`` (case-sensitive, unanchored).
    An empty pattern matches every namespace.
    """
    selector = {
        "$and": [
            {"ts": {"$gt": checkpoint.position}},
            {"ns": {"$regex": checkpoint.filter_regex}},
        ]
    }
    logger.debug(f"Oplog selector = {selector}")
    return selector


def matches_oplog_selector(checkpoint: TailerCheckpoint, entry: LogEntry) -> bool:
    """Evaluate the oplog selector for one entry without a server round trip."""
    if not entry.position > checkpoint.position:
        return False
    return re.search(checkpoint.filter_regex, entry.namespace) is not None
