"""git-reporter: Report and resolve drift across local Git repositories."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    CommandRunner,
    ConfigError,
    DriftReport,
    FleetReport,
    GitOperations,
    GitRepository,
    LastCommit,
    OutcomeKind,
    OutcomeStyle,
    RemoteURLError,
    ReporterError,
    ReporterFleet,
    RepositoryTarget,
    SafeUpdateSequencer,
    SequencerState,
    SyncConfig,
    UpdateOutcome,
    WorkingTreeStatus,
    app,
    build_config,
    commit_text,
    discover_repositories,
    find_config_file,
    has_conflicts,
    is_included,
    load_config_file,
    parse_remote_url,
)
from .formatters import OutputFormatter
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "CircuitState",
    "DriftReport",
    "FleetReport",
    "LastCommit",
    "OutcomeKind",
    "OutcomeStyle",
    "RepositoryTarget",
    "SequencerState",
    "SyncConfig",
    "UpdateOutcome",
    "WorkingTreeStatus",
    # Errors
    "CircuitOpenError",
    "ConfigError",
    "RemoteURLError",
    "ReporterError",
    # Operations
    "CircuitBreaker",
    "CommandRunner",
    "GitOperations",
    "GitRepository",
    "ReporterFleet",
    "SafeUpdateSequencer",
    # Functions
    "build_config",
    "commit_text",
    "discover_repositories",
    "find_config_file",
    "get_tool_schema",
    "has_conflicts",
    "is_included",
    "load_config_file",
    "parse_remote_url",
    # Formatters
    "OutputFormatter",
]
