"""
Persistent directories for Bluecap.

A persistent directory is an absolute path inside the sandbox backed by a
host directory that outlives the container:

    <persistence root>/<capsule>/<logical dir>  ->  <logical dir>

The persistence root is global (/var/lib/bluecap/persistence) when the
original caller is root and per-user (~/.local/share/bluecap/persistence)
otherwise. Host directories are owned by the original caller so files the
sandbox writes stay accessible to them even though root created the tree.
"""

import logging
import os
import posixpath
import shutil
from pathlib import Path

from bluecap.config import Settings
from bluecap.errors import OwnershipError, StorageWriteError, ValidationError
from bluecap.identity import IdentityContext
from bluecap.resolver import CapsuleInfo
from bluecap.schema import CapsuleDefinition
from bluecap.store import RecordStore, merge_set

logger = logging.getLogger(__name__)


def normalize_logical_dir(directory: str) -> str:
    """
    Normalize an in-sandbox directory.

    Raises:
        ValidationError: If the directory is relative or is "/" itself
    """
    if not posixpath.isabs(directory):
        raise ValidationError(message=f"Persistent directory must be absolute: {directory}")
    normalized = posixpath.normpath(directory)
    # normpath keeps a leading "//"
    normalized = "/" + normalized.lstrip("/")
    if normalized == "/":
        raise ValidationError(message="The root directory cannot be persisted.")
    return normalized


class PersistenceManager:
    """
    Maps a capsule's logical directories to host storage.

    Attributes:
        settings: Filesystem layout
        store: Record store for capsule definitions
        identity: The original caller, who owns the host directories
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        identity: IdentityContext,
    ) -> None:
        self.settings = settings
        self.store = store
        self.identity = identity

    def root(self, capsule: str) -> Path:
        """Persistence root of one capsule."""
        if self.identity.is_admin:
            base = self.settings.persistence_path
        else:
            base = self.settings.user_persistence_path(self.identity.home())
        return base / capsule

    def host_path(self, capsule: str, logical_dir: str) -> Path:
        """Host directory backing logical_dir."""
        return self.root(capsule) / logical_dir.lstrip("/")

    def add(self, info: CapsuleInfo, logical_dir: str) -> Path:
        """
        Persist logical_dir for a capsule.

        Creates the host directory (and any missing parents), hands the leaf
        to the original caller, then records the directory.

        Args:
            info: The resolved capsule
            logical_dir: Absolute in-sandbox directory

        Returns:
            The host directory

        Raises:
            ValidationError: If logical_dir is not absolute
            OwnershipError: If chown fails
        """
        logical_dir = normalize_logical_dir(logical_dir)
        storage = self.host_path(info.name, logical_dir)

        try:
            storage.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(
                path=str(storage),
                operation="create",
                underlying_error=str(e),
            ) from e

        uid = self.identity.original_uid
        gid = self.identity.gid()
        try:
            os.chown(storage, uid, gid, follow_symlinks=False)
        except OSError as e:
            raise OwnershipError(
                path=str(storage),
                uid=uid,
                gid=gid,
                underlying_error=e.strerror or str(e),
            ) from e

        self._update(info, logical_dir, remove=False)
        logger.debug("Persisting %s at %s", logical_dir, storage)
        return storage

    def remove(self, info: CapsuleInfo, logical_dir: str, keep_backing: bool = False) -> None:
        """
        Stop persisting logical_dir.

        Args:
            info: The resolved capsule
            logical_dir: Absolute in-sandbox directory
            keep_backing: Leave the host directory in place
        """
        logical_dir = normalize_logical_dir(logical_dir)
        self._update(info, logical_dir, remove=True)

        if not keep_backing:
            self._remove_tree(self.host_path(info.name, logical_dir))

    def purge(self, capsule: str) -> None:
        """Delete every persisted file of a capsule."""
        self._remove_tree(self.root(capsule))

    def _update(self, info: CapsuleInfo, logical_dir: str, remove: bool) -> None:
        capsule = self.store.read(info.path, CapsuleDefinition)
        persistence = merge_set(capsule.persistence, [logical_dir], remove=remove)
        self.store.write(info.path, capsule.model_copy(update={"persistence": persistence}))

    def _remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StorageWriteError(
                path=str(path),
                operation="remove",
                underlying_error=str(e),
            ) from e
        logger.debug("Removed %s", path)
