"""Host Triage.

Collects forensic artifacts (logins, processes, network, persistence, shell
history, patches, scheduled tasks, RDP sessions, users, Windows event logs)
from Linux, macOS and Windows hosts into one record model, and persists them
to SQLite.
"""

__version__ = "0.1.0"

from .config import Config, get_config, reset_config, set_config
from .exceptions import (
    CommandError,
    ConfigurationError,
    DatabaseError,
    FormatError,
    HostTriageError,
    NotFoundError,
    PermissionDeniedError,
    PlatformUnsupportedError,
)
from .models import ArtifactKind

__all__ = [
    "Config",
    "get_config",
    "set_config",
    "reset_config",
    "ArtifactKind",
    "HostTriageError",
    "NotFoundError",
    "FormatError",
    "PermissionDeniedError",
    "PlatformUnsupportedError",
    "CommandError",
    "DatabaseError",
    "ConfigurationError",
]
