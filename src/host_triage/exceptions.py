"""
Custom Exception Hierarchy for Host Triage

Exception Types:
    - HostTriageError: Base exception for all host-triage errors
    - NotFoundError: A file, log source or command does not exist
    - FormatError: Input exists but cannot be decoded
    - PermissionDeniedError: The OS refused access to a source
    - PlatformUnsupportedError: No collection strategy for this OS
    - CommandError / CommandTimeoutError: External command failed or hung
    - DatabaseError: Persistence failed, batch rolled back
    - ConfigurationError: Configuration problem - typically fatal at startup

Usage:
    from host_triage.exceptions import FormatError, NotFoundError

    def open_log(path):
        if not path.exists():
            raise NotFoundError(f"File does not exist: {path}")
"""

from __future__ import annotations


class HostTriageError(Exception):
    """Base exception for host-triage.

    All custom exceptions inherit from this class, allowing callers to catch
    all host-triage errors with a single except clause if desired.
    """

    pass


class NotFoundError(HostTriageError, FileNotFoundError):
    """A requested artifact source does not exist.

    Examples:
        - EVTX path does not exist
        - Log file absent on this distribution
        - History file never created for this shell
    """

    pass


class CommandNotFoundError(NotFoundError):
    """Command binary not found on this host."""

    pass


class FormatError(HostTriageError):
    """Input was found but is not in the expected format.

    The error message is safe to return directly to users.

    Examples:
        - File lacks the .evtx extension
        - Invalid or corrupted event log header
        - Command output that cannot be decoded as JSON
    """

    pass


class PermissionDeniedError(HostTriageError, PermissionError):
    """The operating system denied access to a source.

    Examples:
        - Reading /var/log/auth.log without root
        - Security event log without administrator rights
    """

    pass


class PlatformUnsupportedError(HostTriageError):
    """No collection strategy exists for the current operating system.

    Collectors absorb this and return an empty result.
    """

    pass


class CommandError(HostTriageError):
    """External command or management query failed."""

    pass


class CommandTimeoutError(CommandError):
    """External command exceeded its timeout and was killed."""

    pass


class DatabaseError(HostTriageError):
    """Database operation failed.

    Raised after the enclosing transaction has been rolled back, so no
    partial batch is left behind. The message may contain SQL details and
    should be logged rather than shown to users.

    Examples:
        - Constraint violation on a child row
        - Database file locked or unwritable
    """

    pass


class ConfigurationError(HostTriageError):
    """Configuration problem detected.

    Usually raised at startup.

    Examples:
        - Invalid environment variable value
        - Unreadable YAML config file
        - Invalid log level specified
    """

    pass
