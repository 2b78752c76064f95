"""
Capsule resolution for Bluecap.

Every command names its capsule either literally ("dev") or as "." for the
capsule linked into the current directory or one of its ancestors. The
resolver turns that identifier into a CapsuleInfo and checks, before any
mutation, that the capsule exists exactly when the operation expects it to.

Order matters here: the name is validated against the capsule name pattern
before anything derived from it is used, because names end up inside the
generated polkit rules.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from bluecap.config import Settings
from bluecap.errors import (
    CapsuleAlreadyExistsError,
    CapsuleNotFoundError,
    NoCapsuleLinkedError,
    StorageWriteError,
)
from bluecap.identity import IdentityContext
from bluecap.schema import validate_capsule_name

logger = logging.getLogger(__name__)

LINK_DIR = ".bluecap"
LINK_NAME = "default.json"
CAPSULE_SUFFIX = ".json"

# Run targets starting with this prefix name an image instead of a capsule.
DIRECT_IMAGE_PREFIX = "@"


@dataclass(frozen=True)
class CapsuleInfo:
    """
    A resolved capsule.

    Attributes:
        name: Validated capsule name
        path: Canonical path of the capsule record
        rootless: True if the record lives outside the global store
    """

    name: str
    path: Path
    rootless: bool


class CapsuleResolver:
    """
    Resolves capsule identifiers to their records.

    Example:
        >>> resolver = CapsuleResolver(settings, identity)
        >>> info = resolver.resolve("dev", should_exist=True)
        >>> info.path
        PosixPath('/var/lib/bluecap/capsules/dev.json')
    """

    def __init__(self, settings: Settings, identity: IdentityContext) -> None:
        self.settings = settings
        self.identity = identity

    @property
    def store_path(self) -> Path:
        """Directory literal names resolve into."""
        if self.identity.rootless:
            return self.settings.user_capsules_path(self.identity.home())
        return self.settings.capsules_path

    def capsule_path(self, name: str) -> Path:
        return self.store_path / f"{name}{CAPSULE_SUFFIX}"

    def resolve(
        self,
        identifier: str,
        should_exist: bool,
        cwd: Path | None = None,
    ) -> CapsuleInfo:
        """
        Resolve a capsule identifier.

        Args:
            identifier: Capsule name, or "." for the linked capsule
            should_exist: Whether the operation needs the capsule to exist
            cwd: Directory to start the link search from (default: cwd)

        Returns:
            CapsuleInfo for the capsule

        Raises:
            NoCapsuleLinkedError: "." was given and no link was found
            InvalidCapsuleNameError: The name does not match the pattern
            CapsuleNotFoundError: should_exist and the record is missing
            CapsuleAlreadyExistsError: not should_exist and the record exists
        """
        if identifier == ".":
            path = self.find_link(cwd or Path.cwd())
            name = path.stem
        else:
            name = identifier
            path = self.capsule_path(name)

        validate_capsule_name(name)

        info = CapsuleInfo(
            name=name,
            path=path,
            rootless=not _is_within(path, self.settings.capsules_path),
        )
        logger.debug("Resolved %s to %s (rootless=%s)", identifier, info.path, info.rootless)

        exists = path.is_file()
        if should_exist and not exists:
            raise CapsuleNotFoundError(capsule=name)
        if not should_exist and exists:
            raise CapsuleAlreadyExistsError(capsule=name)

        return info

    def find_link(self, start: Path) -> Path:
        """
        Find the nearest link pointer at or above start.

        Returns:
            The link target (the capsule record path), not further resolved

        Raises:
            NoCapsuleLinkedError: If no directory up to / has a link
        """
        start = Path(os.path.abspath(start))
        for parent in (start, *start.parents):
            link = parent / LINK_DIR / LINK_NAME
            # is_file() follows the link, so dangling links are skipped
            if link.is_file():
                target = Path(os.readlink(link)) if link.is_symlink() else link
                if not target.is_absolute():
                    target = link.parent / target
                logger.debug("Found link %s -> %s", link, target)
                return target
        raise NoCapsuleLinkedError(directory=str(start))

    def link(self, info: CapsuleInfo, directory: Path) -> Path:
        """
        Link a capsule into directory, replacing any existing link.

        Args:
            info: The resolved capsule
            directory: Directory that "." should resolve from

        Returns:
            Path of the created link

        Raises:
            StorageWriteError: If the link cannot be created
        """
        target = Path(directory) / LINK_DIR / LINK_NAME
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_symlink() or target.exists():
                target.unlink()
            target.symlink_to(info.path)
        except OSError as e:
            raise StorageWriteError(
                path=str(target),
                operation="link",
                underlying_error=str(e),
            ) from e
        logger.debug("Linked %s -> %s", target, info.path)
        return target


def is_direct_image(target: str) -> bool:
    """True if a run target names an image rather than a capsule."""
    return target.startswith(DIRECT_IMAGE_PREFIX) and len(target) > 1


def _is_within(path: Path, directory: Path) -> bool:
    return Path(os.path.abspath(path)).is_relative_to(os.path.abspath(directory))
