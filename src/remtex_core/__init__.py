"""remtex core - shared by the local session and the remote orchestrator."""
from .blocksync import Receiver, Sender, StreamError
from .deps import DependencyScanner, scan_dependencies
from .errors import RemoteError, RemtexError, SetupError
from .watcher import ChangeWatcher

__all__ = [
    "Receiver",
    "Sender",
    "StreamError",
    "DependencyScanner",
    "scan_dependencies",
    "RemoteError",
    "RemtexError",
    "SetupError",
    "ChangeWatcher",
]
