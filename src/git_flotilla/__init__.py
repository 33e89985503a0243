"""git-flotilla: run git across a whole directory of repositories, safely."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .bulk import FleetManager, PullMode
from .cli import app
from .config import FlotillaConfig, load_config
from .conflict import ConflictDetector, detect
from .errors import ErrorKind, FlotillaError, NetworkErrorKind
from .formatters import OutputFormatter
from .gitcmd import GitExecutor, ProcessResult
from .health import diagnose
from .manifest import Manifest, load_manifest
from .models import (
    BulkOperationOptions,
    BulkOperationResult,
    ConflictReport,
    HealthRecord,
    RepositoryHandle,
    RepositoryState,
    SyncAction,
    SyncManifestEntry,
    SyncOutcome,
    SyncStrategy,
)
from .planner import ForgeListing, plan
from .pool import run_bulk
from .safety import RepoAction, authorize
from .scanner import scan
from .state import inspect
from .sync import SyncExecutor
from .watch import FleetWatcher

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "BulkOperationOptions",
    "BulkOperationResult",
    "ConflictReport",
    "HealthRecord",
    "RepositoryHandle",
    "RepositoryState",
    "SyncAction",
    "SyncManifestEntry",
    "SyncOutcome",
    "SyncStrategy",
    # Errors
    "ErrorKind",
    "FlotillaError",
    "NetworkErrorKind",
    # Configuration
    "FlotillaConfig",
    "load_config",
    "load_manifest",
    "Manifest",
    # Operations
    "ConflictDetector",
    "FleetManager",
    "FleetWatcher",
    "ForgeListing",
    "GitExecutor",
    "ProcessResult",
    "PullMode",
    "RepoAction",
    "SyncExecutor",
    # Functions
    "authorize",
    "detect",
    "diagnose",
    "inspect",
    "plan",
    "run_bulk",
    "scan",
    # Formatters
    "OutputFormatter",
]
