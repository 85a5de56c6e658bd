"""Publisher side: compaction, manifest, HTTP transport and scheduling."""

from .archive_writer import ArchiveSink, ArchiveWriteError, ArchiveWriter
from .compactor import CompactionError, Compactor
from .manifest_store import ManifestStore
from .puller import ExternalPuller
from .realtime import RealtimePublications
from .scheduler import SyncScheduler
from .service import SyncService
from .transforms import create_transform
from .transport import SingleAccountAuthenticator, create_app

__all__ = [
    "ArchiveSink",
    "ArchiveWriteError",
    "ArchiveWriter",
    "CompactionError",
    "Compactor",
    "ExternalPuller",
    "ManifestStore",
    "RealtimePublications",
    "SingleAccountAuthenticator",
    "SyncScheduler",
    "SyncService",
    "create_app",
    "create_transform",
]
