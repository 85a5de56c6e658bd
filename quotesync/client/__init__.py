"""Client side: fetch the manifest, download archives and apply them in order."""

from .cache_table import CacheTable, RollbackRequired
from .combination import CombinationJudge
from .comparison import CacheComparison
from .extractor import ArchiveExtractor, ExtractionError
from .pipeline import CategoryPipeline, TaskStatus
from .progress import ProgressReporter
from .session import EXIT_FAILURE, EXIT_ROLLBACK, EXIT_STOPPED, EXIT_SUCCESS, StopRequested, SyncSession
from .sink import BufferFile, BufferFileTable
from .transport import AuthenticationError, SyncTransportClient, TransportError

__all__ = [
    "ArchiveExtractor",
    "AuthenticationError",
    "BufferFile",
    "BufferFileTable",
    "CacheComparison",
    "CacheTable",
    "CategoryPipeline",
    "CombinationJudge",
    "EXIT_FAILURE",
    "EXIT_ROLLBACK",
    "EXIT_STOPPED",
    "EXIT_SUCCESS",
    "ExtractionError",
    "ProgressReporter",
    "RollbackRequired",
    "StopRequested",
    "SyncSession",
    "SyncTransportClient",
    "TaskStatus",
    "TransportError",
]
