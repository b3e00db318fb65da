"""
Exception hierarchy for the oplog tailer.
"""


class MongotailError(Exception):
    """Base exception for tailer errors."""
    pass


class CheckpointError(MongotailError):
    """Error saving/loading checkpoint."""
    pass


class MultipleCheckpointsError(CheckpointError):
    """More than one checkpoint record exists for a filter/label pair.

    This is a data-integrity violation. The tailer refuses to pick one,
    since a wrong choice silently changes the resume position.
    """

    def __init__(self, filter_regex: str, label: str, count: int):
        self.filter_regex = filter_regex
        self.label = label
        self.count = count
        super().__init__(
            f"Found {count} checkpoint records for filter [{filter_regex}] and label [{label}]. "
            f"There should only be one record per filter and label. Please correct and restart."
        )


class TailerError(MongotailError):
    """Fatal error while tailing the oplog."""
    pass


class SourceUnavailableError(TailerError):
    """The log source could not be reached at startup."""
    pass
