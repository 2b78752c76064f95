"""
Exception hierarchy for Bluecap.

All Bluecap exceptions inherit from BluecapError, allowing callers to catch
all Bluecap-specific exceptions with a single except clause.

Exception Categories:
    - ValidationError: Malformed name, missing argument, unknown option
    - CapsuleNotFoundError / CapsuleAlreadyExistsError: Existence mismatches
    - NoCapsuleLinkedError: No link pointer found for "."
    - ContainmentError: Working directory outside the caller's home
    - AuthorizationError: Privileged command run without elevated rights
    - StorageError: Filesystem operation failed (including chown)
    - ProcessLaunchError: Process replacement failed

Every error is terminal: the CLI reports it once on stderr and exits with a
nonzero status. Nothing is retried.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Validation errors: 1xxx
ERROR_VALIDATION = 1001
ERROR_INVALID_CAPSULE_NAME = 1002
ERROR_MISSING_ARGUMENT = 1003
ERROR_INVALID_OPTION = 1004
ERROR_INVALID_SETTINGS = 1005
ERROR_UNKNOWN_USER = 1006

# Existence errors: 2xxx
ERROR_CAPSULE_NOT_FOUND = 2001
ERROR_CAPSULE_EXISTS = 2002
ERROR_EXPORT_EXISTS = 2003
ERROR_NO_CAPSULE_LINKED = 2004
ERROR_RECORD_NOT_FOUND = 2005

# Boundary errors: 3xxx
ERROR_CONTAINMENT = 3001
ERROR_AUTHORIZATION = 3002

# Storage errors: 4xxx
ERROR_STORAGE_READ = 4001
ERROR_STORAGE_MALFORMED = 4002
ERROR_STORAGE_WRITE = 4003
ERROR_STORAGE_OWNERSHIP = 4004

# Process errors: 5xxx
ERROR_PROCESS_LAUNCH = 5001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class BluecapError(Exception):
    """
    Base exception for all Bluecap errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Validation Errors
# =============================================================================


@dataclass
class ValidationError(BluecapError):
    """Raised when user-facing input is malformed."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_VALIDATION


@dataclass
class InvalidCapsuleNameError(ValidationError):
    """
    Raised when a capsule name does not match the capsule name pattern.

    Names end up in file names, container names and the generated polkit
    rules, so this check runs before any of those are derived.
    """

    name: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid capsule name: {self.name}"
        if self.code == 0:
            self.code = ERROR_INVALID_CAPSULE_NAME
        if not self.suggestion:
            self.suggestion = "Use only letters, digits, '_', '.' and '-'"
        super().__post_init__()
        self.context["name"] = self.name


@dataclass
class MissingArgumentError(ValidationError):
    """Raised when a required argument was not given."""

    argument: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"A {self.argument} is required."
        if self.code == 0:
            self.code = ERROR_MISSING_ARGUMENT
        super().__post_init__()
        self.context["argument"] = self.argument


@dataclass
class InvalidOptionError(ValidationError):
    """Raised when an unknown or misused option is given."""

    option: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid option: {self.option}"
        if self.code == 0:
            self.code = ERROR_INVALID_OPTION
        super().__post_init__()
        self.context["option"] = self.option


@dataclass
class SettingsError(ValidationError):
    """Raised when the settings file cannot be parsed or validated."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid settings in {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_INVALID_SETTINGS
        super().__post_init__()
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class UnknownUserError(ValidationError):
    """Raised when the original caller's uid has no passwd entry."""

    uid: int = -1

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No user with uid {self.uid}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_USER
        super().__post_init__()
        self.context["uid"] = self.uid


# =============================================================================
# Existence Errors
# =============================================================================


@dataclass
class CapsuleNotFoundError(BluecapError):
    """Raised when an operation needs a capsule that does not exist."""

    capsule: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Capsule {self.capsule} does not exist."
        if self.code == 0:
            self.code = ERROR_CAPSULE_NOT_FOUND
        self.context["capsule"] = self.capsule


@dataclass
class CapsuleAlreadyExistsError(BluecapError):
    """Raised when creating a capsule whose record already exists."""

    capsule: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Capsule {self.capsule} already exists."
        if self.code == 0:
            self.code = ERROR_CAPSULE_EXISTS
        self.context["capsule"] = self.capsule


@dataclass
class ExportExistsError(BluecapError):
    """Raised when an export shim with the requested name is already present."""

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Export at {self.path} already exists"
        if self.code == 0:
            self.code = ERROR_EXPORT_EXISTS
        if not self.suggestion:
            self.suggestion = "Pass --as with a different name"
        self.context["path"] = self.path


@dataclass
class NoCapsuleLinkedError(BluecapError):
    """Raised when "." is used but no ancestor directory links a capsule."""

    directory: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "No capsule has been linked."
        if self.code == 0:
            self.code = ERROR_NO_CAPSULE_LINKED
        if not self.suggestion:
            self.suggestion = "Run 'bluecap link CAPSULE' in this directory or a parent"
        self.context["directory"] = self.directory


# =============================================================================
# Boundary Errors
# =============================================================================


@dataclass
class ContainmentError(BluecapError):
    """Raised when a run is requested outside the caller's home directory."""

    workdir: str = ""
    home: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Working directory {self.workdir} is not under your home directory."
        if self.code == 0:
            self.code = ERROR_CONTAINMENT
        self.context.update({
            "workdir": self.workdir,
            "home": self.home,
        })


@dataclass
class AuthorizationError(BluecapError):
    """Raised when a privileged command is entered without elevated rights."""

    command: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.command} must be run with elevated rights"
        if self.code == 0:
            self.code = ERROR_AUTHORIZATION
        if not self.suggestion:
            self.suggestion = "Use the unprivileged command, it escalates through pkexec"
        self.context["command"] = self.command


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(BluecapError):
    """
    Base class for filesystem errors.

    Attributes:
        path: The file or directory the operation touched
        operation: The operation that failed (e.g., "read", "write")
    """

    path: str = ""
    operation: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Could not {self.operation} {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        self.context.update({
            "path": self.path,
            "operation": self.operation,
            "underlying_error": self.underlying_error,
        })


@dataclass
class RecordNotFoundError(StorageError):
    """Raised when a JSON record is missing."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.path} must exist!"
        if self.code == 0:
            self.code = ERROR_RECORD_NOT_FOUND
        if not self.operation:
            self.operation = "read"
        super().__post_init__()


@dataclass
class RecordMalformedError(StorageError):
    """Raised when a JSON record cannot be parsed or fails validation."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Malformed record {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_MALFORMED
        if not self.operation:
            self.operation = "parse"
        super().__post_init__()


@dataclass
class StorageWriteError(StorageError):
    """Raised when writing or removing files fails."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        if not self.operation:
            self.operation = "write"
        super().__post_init__()


@dataclass
class OwnershipError(StorageError):
    """Raised when chown of a persistence directory fails."""

    uid: int = -1
    gid: int = -1

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"chown of {self.path} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_OWNERSHIP
        if not self.operation:
            self.operation = "chown"
        super().__post_init__()
        self.context.update({
            "uid": self.uid,
            "gid": self.gid,
        })


# =============================================================================
# Process Errors
# =============================================================================


@dataclass
class ProcessLaunchError(BluecapError):
    """Raised when replacing the current process fails (execvp returned)."""

    program: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"execvp {self.program} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_PROCESS_LAUNCH
        self.context.update({
            "program": self.program,
            "underlying_error": self.underlying_error,
        })
