"""
Exported commands for Bluecap.

An export is a two-line executable shim:

    #!/usr/bin/bluecap run-exported-internal:<capsule>
    <command>

The kernel runs it as `bluecap run-exported-internal:<capsule> <shim> args...`,
which Bluecap recognizes before parsing anything else and turns into
`bluecap run <capsule> <command> args...` from the current directory.

Shims exported in rootless mode carry `run-exported-internal:rootless:<capsule>`
so that re-entry looks the capsule up in the same store. Capsule names
cannot contain ":", so the two forms never overlap.
"""

import logging
from pathlib import Path

from bluecap.config import Settings
from bluecap.errors import ExportExistsError, RecordMalformedError, StorageError, ValidationError
from bluecap.identity import IdentityContext
from bluecap.schema import is_valid_capsule_name, validate_capsule_name
from bluecap.store import RecordStore

logger = logging.getLogger(__name__)

REENTRY_MARKER = "run-exported-internal:"
ROOTLESS_MARKER = "rootless:"
SHIM_MODE = 0o755


class ExportManager:
    """
    Writes and reads export shims.

    Attributes:
        settings: Filesystem layout
        store: Used for atomic writes
        identity: Selects the global or rootless exports directory
        program: Absolute path of the bluecap executable, for the shebang
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        identity: IdentityContext,
        program: str,
    ) -> None:
        self.settings = settings
        self.store = store
        self.identity = identity
        self.program = program

    @property
    def bin_path(self) -> Path:
        if self.identity.rootless:
            return self.settings.user_exports_bin_path(self.identity.home())
        return self.settings.exports_bin_path

    def export(self, capsule: str, exposed_name: str, command: str) -> Path:
        """
        Export command from capsule as exposed_name.

        Args:
            capsule: Capsule name (already resolved)
            exposed_name: File name of the shim
            command: Executable to run inside the capsule

        Returns:
            Path of the new shim

        Raises:
            ValidationError: If the name or command cannot go into a shim
            ExportExistsError: If a shim with that name exists
        """
        validate_capsule_name(capsule)
        validate_export(exposed_name, command)

        path = self.bin_path / exposed_name
        if path.exists() or path.is_symlink():
            raise ExportExistsError(path=str(path))

        content = render_shim(self.program, capsule, command, rootless=self.identity.rootless)
        self.store.write_atomic(path, content, mode=SHIM_MODE)
        logger.debug("Exported %s from %s to %s", command, capsule, path)
        return path


def validate_export(exposed_name: str, command: str) -> None:
    """
    Check that an export can be written as a shim.

    Raises:
        ValidationError: If the name fails the capsule name pattern or the
            command is empty or spans several lines
    """
    if not is_valid_capsule_name(exposed_name) or exposed_name in (".", ".."):
        raise ValidationError(
            message=f"Invalid export name: {exposed_name}",
            suggestion="Use only letters, digits, '_', '.' and '-'",
        )
    if not command.strip() or "\n" in command or "\r" in command:
        raise ValidationError(message="The exported command must be a single line.")


def render_marker(capsule: str, rootless: bool = False) -> str:
    return f"{REENTRY_MARKER}{ROOTLESS_MARKER if rootless else ''}{capsule}"


def render_shim(program: str, capsule: str, command: str, rootless: bool = False) -> str:
    return f"#!{program} {render_marker(capsule, rootless)}\n{command}\n"


def read_shim(path: Path | str) -> str:
    """
    Return the command stored in a shim.

    Raises:
        RecordMalformedError: If the file is not a bluecap shim
    """
    path = Path(path)
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        raise StorageError(path=str(path), operation="read", underlying_error=str(e)) from e

    if len(lines) < 2 or REENTRY_MARKER not in lines[0] or not lines[1]:
        raise RecordMalformedError(path=str(path), underlying_error="not a bluecap export")
    return lines[1]


def parse_marker(argument: str) -> tuple[str, bool] | None:
    """
    Parse a re-entry marker argument.

    Returns:
        (capsule, rootless), or None if argument is not a marker
    """
    if not argument.startswith(REENTRY_MARKER):
        return None
    target = argument[len(REENTRY_MARKER):]
    if target.startswith(ROOTLESS_MARKER):
        return target[len(ROOTLESS_MARKER):], True
    return target, False
