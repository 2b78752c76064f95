"""
Identity context for Bluecap.

Everything privileged happens as root, yet files, container users and home
directories must belong to whoever originally asked. IdentityContext
carries that original identity (plus the rootless and verbose flags) from
the unprivileged phase through pkexec to the privileged phase.

pkexec clears the environment of the program it runs, so the context
crosses the escalation boundary as a leading `--bluecap-context=<json>`
argument. pkexec must run bluecap directly (not through `env`), otherwise
polkit matches the generic exec action instead of the bluecap one.

A caller can put anything into the forwarded context, so the uid reported
by the escalation layer always wins. The forwarded uid is only used when
no layer reports a non-root initiator, and a privileged process never
takes the rootless flag from it: rootless requests do not escalate, and a
forged one would make root read capsules from the caller's own store.
"""

import json
import logging
import os
import pwd
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from bluecap.errors import UnknownUserError

logger = logging.getLogger(__name__)

CONTEXT_ARG = "--bluecap-context"
ROOTLESS_ENV = "BLUECAP_ROOTLESS"
VERBOSE_ENV = "BLUECAP_VERBOSE"


class IdentityContext(BaseModel):
    """
    Who originally asked, and in which mode.

    Attributes:
        original_uid: uid of the non-elevated caller
        rootless: Operate on per-user storage without escalation
        verbose: Emit debug diagnostics

    Only these three fields cross the escalation boundary. A home
    directory set with with_home() stays in this process.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    original_uid: int = Field(..., ge=0)
    rootless: bool = False
    verbose: bool = False

    _home_override: Path | None = PrivateAttr(default=None)

    @property
    def is_admin(self) -> bool:
        """True when the original caller is root itself."""
        return self.original_uid == 0

    def home(self) -> Path:
        """
        Home directory of the original caller.

        Raises:
            UnknownUserError: If the uid has no passwd entry
        """
        if self._home_override is not None:
            return self._home_override
        if self.original_uid == os.getuid():
            return Path.home()
        try:
            home = Path(pwd.getpwuid(self.original_uid).pw_dir)
        except KeyError as e:
            raise UnknownUserError(uid=self.original_uid) from e
        logger.debug("UID is not the same, original home dir: %s", home)
        return home

    def gid(self) -> int:
        """Primary group of the original caller (falls back to the uid)."""
        try:
            return pwd.getpwuid(self.original_uid).pw_gid
        except KeyError:
            return self.original_uid

    def to_argument(self) -> str:
        """Serialize for the escalation channel, without spaces."""
        payload = json.dumps(
            self.model_dump(mode="json"),
            separators=(",", ":"),
            sort_keys=True,
        )
        return f"{CONTEXT_ARG}={payload}"

    @classmethod
    def from_argument(cls, argument: str) -> "IdentityContext | None":
        """Parse a forwarded context argument, or None if it is unusable."""
        prefix = f"{CONTEXT_ARG}="
        if not argument.startswith(prefix):
            return None
        # The polkit rules treat the context as a single token
        if any(ch.isspace() for ch in argument):
            logger.debug("Ignoring identity context with whitespace: %r", argument)
            return None
        try:
            return cls.model_validate_json(argument[len(prefix):])
        except PydanticValidationError:
            logger.debug("Ignoring malformed identity context: %r", argument)
            return None

    @classmethod
    def detect(
        cls,
        environ: Mapping[str, str] | None = None,
        uid: int | None = None,
        forwarded: "IdentityContext | None" = None,
    ) -> "IdentityContext":
        """
        Derive the identity context for this process.

        Args:
            environ: Environment to inspect (default: os.environ)
            uid: Real uid of this process (default: os.getuid())
            forwarded: Context received over the escalation channel

        Returns:
            The identity context. Flags come from BLUECAP_ROOTLESS /
            BLUECAP_VERBOSE or the forwarded context; as root, rootless
            only comes from the environment.
        """
        environ = os.environ if environ is None else environ
        uid = os.getuid() if uid is None else uid

        rootless = bool(environ.get(ROOTLESS_ENV))
        verbose = bool(environ.get(VERBOSE_ENV)) or bool(forwarded and forwarded.verbose)

        if uid != 0:
            rootless = rootless or bool(forwarded and forwarded.rootless)
            return cls(original_uid=uid, rootless=rootless, verbose=verbose)

        if forwarded is not None and forwarded.rootless:
            logger.debug("Ignoring rootless flag in a forwarded identity context")

        pkexec_uid = _parse_uid(environ, "PKEXEC_UID")
        sudo_uid = _parse_uid(environ, "SUDO_UID")
        if pkexec_uid:
            original_uid = pkexec_uid
        elif sudo_uid is not None:
            original_uid = sudo_uid
        elif forwarded is not None:
            original_uid = forwarded.original_uid
        else:
            logger.debug("Running as UID 0, but could not find an original UID")
            original_uid = 0

        return cls(original_uid=original_uid, rootless=rootless, verbose=verbose)

    def with_flags(
        self,
        rootless: bool | None = None,
        verbose: bool | None = None,
    ) -> "IdentityContext":
        """Return a copy with command-line flags folded in."""
        update = {}
        if rootless:
            update["rootless"] = True
        if verbose:
            update["verbose"] = True
        return self.model_copy(update=update) if update else self

    def with_home(self, home: Path) -> "IdentityContext":
        """Return a copy that uses home instead of the passwd entry."""
        copy = self.model_copy()
        copy._home_override = home
        return copy


def _parse_uid(environ: Mapping[str, str], name: str) -> int | None:
    value = environ.get(name, "")
    if not value.isdigit():
        return None
    logger.debug("Got original UID %s from %s", value, name)
    return int(value)
