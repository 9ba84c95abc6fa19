"""gitsync: fetch, fast-forward and push every Git repository under a directory."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    CommandExecutor,
    CommandOutcome,
    ConfigError,
    DiscoveryError,
    ErrorKind,
    FleetOrchestrator,
    FleetSummary,
    GitCommandRunner,
    GitSyncError,
    PipelineStage,
    RepositoryLocation,
    RepositoryState,
    RepositorySyncPipeline,
    SyncAction,
    SyncOptions,
    SyncOutcome,
    app,
    build_options,
    classify,
    discover_repositories,
    sync_fleet,
)
from .formatters import OutputFormatter, ReportWriter

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "CommandOutcome",
    "ErrorKind",
    "FleetSummary",
    "PipelineStage",
    "RepositoryLocation",
    "RepositoryState",
    "SyncAction",
    "SyncOptions",
    "SyncOutcome",
    # Errors
    "ConfigError",
    "DiscoveryError",
    "GitSyncError",
    # Operations
    "CommandExecutor",
    "FleetOrchestrator",
    "GitCommandRunner",
    "RepositorySyncPipeline",
    # Functions
    "build_options",
    "classify",
    "discover_repositories",
    "sync_fleet",
    # Formatters
    "OutputFormatter",
    "ReportWriter",
]
