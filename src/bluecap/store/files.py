"""
JSON record storage for Bluecap.

Design Principles:
    - Readers see either the old or the new content, never a partial write
    - A crash between writing the temp file and renaming it only leaves an
      orphaned temp file behind; the target is untouched
    - No locking: two writers racing on the same record both succeed and
      the later rename wins outright

Layout:
    - <store>/<name>.json: one CapsuleDefinition per capsule
    - polkit-trusted.json: the TrustRecord
    - defaults.json: the DefaultsDefinition (read-only here)
"""

import json
import logging
import os
import tempfile
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from bluecap.errors import (
    RecordMalformedError,
    RecordNotFoundError,
    StorageError,
    StorageWriteError,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def generate_id() -> str:
    """Generate a short unique suffix for container names."""
    return uuid.uuid4().hex[:8]


def merge_set(
    existing: Iterable[str],
    delta: Iterable[str],
    remove: bool = False,
) -> list[str]:
    """
    Merge delta into existing as a set.

    Args:
        existing: Current elements
        delta: Elements to add (or remove)
        remove: Take the difference instead of the union

    Returns:
        The resulting elements without duplicates. Callers must not depend
        on the order.
    """
    result = dict.fromkeys(existing)
    if remove:
        for item in delta:
            result.pop(item, None)
    else:
        result.update(dict.fromkeys(delta))
    return list(result)


class RecordStore:
    """
    Reads and writes JSON records.

    The store has no state of its own; it exists so the privileged handlers
    can share one object and tests can swap it out.

    Example:
        >>> store = RecordStore()
        >>> capsule = store.read(path, CapsuleDefinition)
        >>> store.write(path, capsule.model_copy(update={"options": []}))
    """

    def read(self, path: Path, model: type[RecordT]) -> RecordT:
        """
        Read and validate a record.

        Args:
            path: Path of the JSON file
            model: Pydantic model to validate against

        Returns:
            The validated record

        Raises:
            RecordNotFoundError: If the file does not exist
            RecordMalformedError: If it is not JSON or fails validation
            StorageError: For any other read failure
        """
        try:
            text = path.read_text()
        except FileNotFoundError as e:
            raise RecordNotFoundError(path=str(path), underlying_error=str(e)) from e
        except OSError as e:
            raise StorageError(path=str(path), operation="read", underlying_error=str(e)) from e

        try:
            return model.model_validate(json.loads(text))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise RecordMalformedError(path=str(path), underlying_error=str(e)) from e

    def read_optional(self, path: Path, model: type[RecordT]) -> RecordT | None:
        """Read a record, returning None if the file does not exist."""
        try:
            return self.read(path, model)
        except RecordNotFoundError:
            return None

    def read_text(self, path: Path) -> str:
        """Read a record verbatim (for dumping)."""
        try:
            return path.read_text()
        except FileNotFoundError as e:
            raise RecordNotFoundError(path=str(path), underlying_error=str(e)) from e
        except OSError as e:
            raise StorageError(path=str(path), operation="read", underlying_error=str(e)) from e

    def write(self, path: Path, record: BaseModel) -> None:
        """Serialize a record as pretty JSON and write it atomically."""
        content = json.dumps(record.model_dump(mode="json"), indent=2) + "\n"
        self.write_atomic(path, content)

    def write_atomic(self, path: Path, content: str, mode: int = 0o644) -> None:
        """
        Replace path with content atomically.

        The content goes to a uniquely named sibling temp file, is flushed
        to disk, then renamed over the target.

        Args:
            path: Target file
            content: Full new content
            mode: Permission bits of the new file

        Raises:
            StorageWriteError: If any step fails
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".atomic",
            )
        except OSError as e:
            raise StorageWriteError(path=str(path), underlying_error=str(e)) from e

        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StorageWriteError(path=str(path), underlying_error=str(e)) from e

        logger.debug("Wrote %s", path)

    def remove(self, path: Path) -> None:
        """Remove a single file."""
        try:
            path.unlink()
        except OSError as e:
            raise StorageWriteError(
                path=str(path),
                operation="remove",
                underlying_error=str(e),
            ) from e
