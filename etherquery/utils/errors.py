"""Error taxonomy shared by the indexer components.

Transient errors are retried where they happen, divergence is handled by the
indexer state machine, and fatal errors stop the service and reach the host.
"""


class IndexerError(Exception):
    """Base class for every error raised by etherquery."""


class TransientError(IndexerError):
    """Network, rate-limit or availability problem worth retrying."""


class NotAvailable(TransientError):
    """The chain node cannot serve the requested block right now."""


class DivergenceError(IndexerError):
    """A block does not extend the chain the service last accepted."""

    def __init__(self, height: int, expected_parent, actual_parent):
        super().__init__(
            f"block {height} has parent {actual_parent}, expected {expected_parent}"
        )
        self.height = height
        self.expected_parent = expected_parent
        self.actual_parent = actual_parent


class FatalError(IndexerError):
    """Unrecoverable condition; the service stops and reports it."""


class ExportFailedError(FatalError):
    """A batch could not be written to the warehouse."""


class ExtractionError(FatalError):
    """A block holds data that cannot be represented in the output records."""


class CursorStoreError(FatalError):
    """The persisted cursor is unreadable, corrupt or cannot be written."""


class ReorgTooDeepError(FatalError):
    """No common ancestor was found within the configured reorg depth."""
