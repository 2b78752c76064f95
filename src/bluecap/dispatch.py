"""
Privilege dispatch for Bluecap.

A request moves through these states:

    Requesting -> Escalating -> Privileged -> Terminated
    Requesting -> Privileged -> Terminated    (already privileged)

Requesting runs the action's prepare step. If the process already has the
rights it needs (effective uid 0, or rootless mode, which needs none), the
handler runs in-process and the process exits. Otherwise the process is
replaced by:

    pkexec <bluecap> --bluecap-context=<json> su-<action> <args...>

Nothing runs after a process replacement, so dispatch() and everything
that ends in it never return.

Run requests keep the user's command verbatim, including tokens that look
like options, so they are split by hand instead of by the option parser.
"""

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from bluecap.actions import ACTIONS, PRIVILEGED_COMMANDS, Action
from bluecap.errors import (
    AuthorizationError,
    InvalidOptionError,
    MissingArgumentError,
    ValidationError,
)
from bluecap.exports import parse_marker, read_shim
from bluecap.process import ExecFunction, replace_process
from bluecap.services import Services

logger = logging.getLogger(__name__)

WORKDIR_OPTIONS = ("-w", "--workdir")


@dataclass(frozen=True)
class RunRequest:
    """
    A split run command line.

    Attributes:
        capsule: Capsule identifier or "@image"
        workdir: Working directory option, if given
        command: The command and its arguments, untouched
    """

    capsule: str
    workdir: str | None = None
    command: list[str] = field(default_factory=list)


def split_run_arguments(tokens: Sequence[str]) -> RunRequest:
    """
    Split raw run arguments into options, capsule and command.

    -w/--workdir may appear before and after the capsule. The first token
    after the capsule that is not an option starts the command, and
    everything from there on belongs to the command. "--" ends option
    parsing.

    Args:
        tokens: Arguments following "run"

    Returns:
        The split request

    Raises:
        MissingArgumentError: If the capsule or the command is missing
        InvalidOptionError: If an unknown option precedes the command
        ValidationError: If -w/--workdir has no value
    """
    capsule: str | None = None
    workdir: str | None = None

    i = 0
    while i < len(tokens):
        token = tokens[i]

        if token == "--":
            rest = list(tokens[i + 1:])
            if capsule is None:
                if not rest:
                    break
                capsule, rest = rest[0], rest[1:]
            if not rest:
                raise MissingArgumentError(argument="command")
            return RunRequest(capsule=capsule, workdir=workdir, command=rest)

        if token in WORKDIR_OPTIONS:
            if i + 1 >= len(tokens) or not tokens[i + 1]:
                raise ValidationError(message="-w/--workdir requires an argument.")
            workdir = tokens[i + 1]
            i += 2
            continue

        if token.startswith("--workdir="):
            workdir = token.partition("=")[2]
            if not workdir:
                raise ValidationError(message="-w/--workdir requires an argument.")
            i += 1
            continue

        if token.startswith("-") and token != "-":
            raise InvalidOptionError(option=token)

        if capsule is None:
            capsule = token
            i += 1
            continue

        return RunRequest(capsule=capsule, workdir=workdir, command=list(tokens[i:]))

    if capsule is None:
        raise MissingArgumentError(argument="capsule")
    raise MissingArgumentError(argument="command")


class PrivilegeDispatcher:
    """
    Runs actions on the right side of the privilege boundary.

    Attributes:
        services: Components built for this invocation
        exec_fn: Process replacement primitive
        euid: Returns the effective uid (injectable for tests)

    Example:
        >>> dispatcher = PrivilegeDispatcher(services)
        >>> dispatcher.request(Action.CREATE, capsule="dev", image="fedora")
    """

    def __init__(
        self,
        services: Services,
        exec_fn: ExecFunction = replace_process,
        euid: Callable[[], int] = os.geteuid,
    ) -> None:
        self.services = services
        self.exec_fn = exec_fn
        self.euid = euid

    def has_privileges(self) -> bool:
        """True if handlers can run in this process."""
        return self.services.identity.rootless or self.euid() == 0

    def request(self, action: Action, **kwargs) -> NoReturn:
        """
        Validate a user request and dispatch it.

        Args:
            action: The action to perform
            **kwargs: Arguments for the action's prepare step
        """
        spec = ACTIONS[action]
        args = spec.prepare(self.services, **kwargs)
        self.dispatch(action, args)

    def dispatch(self, action: Action, args: Sequence[str]) -> NoReturn:
        """
        Run the privileged phase of an action.

        With rights, the handler runs here and the process exits with
        status 0. Without, the process is replaced by the escalation
        program re-running Bluecap on the privileged command.
        """
        spec = ACTIONS[action]
        if self.has_privileges():
            logger.debug("Skipping escalation: %s %s", spec.privileged_command, list(args))
            spec.handler(self.services, list(args))
            raise SystemExit(0)

        argv = [
            self.services.program,
            self.services.identity.to_argument(),
            spec.privileged_command,
            *args,
        ]
        self.exec_fn(self.services.settings.escalation_program, argv)

    def run_privileged(self, command: str, args: Sequence[str]) -> NoReturn:
        """
        Entry point for su-* commands.

        Raises:
            ValidationError: If command is not a privileged command
            AuthorizationError: If this process lacks the rights
        """
        spec = PRIVILEGED_COMMANDS.get(command)
        if spec is None:
            raise ValidationError(message=f"Invalid command: {command}")
        if not self.has_privileges():
            raise AuthorizationError(command=command)

        logger.debug("%s: %s", command, list(args))
        spec.handler(self.services, list(args))
        raise SystemExit(0)

    def run_exported(self, argv: Sequence[str]) -> NoReturn:
        """
        Run an exported command.

        The kernel runs a shim as `bluecap run-exported-internal:<capsule>
        <shim> args...`; this is the same as `bluecap run <capsule>
        <command> args...` from the current directory. A shim exported in
        rootless mode only runs in rootless mode, and the reverse.
        """
        marker = parse_marker(argv[0]) if argv else None
        if marker is None or not marker[0]:
            raise MissingArgumentError(argument="capsule")
        capsule, rootless = marker
        if rootless != self.services.identity.rootless:
            mode = "rootless" if rootless else "global"
            raise ValidationError(
                message=f"The export of {capsule} belongs to a {mode} capsule.",
                suggestion="Unset BLUECAP_ROOTLESS" if not rootless else "",
            )
        if len(argv) < 2:
            raise MissingArgumentError(argument="export file")

        command = [read_shim(argv[1]), *argv[2:]]
        self.request(Action.RUN, target=capsule, workdir=Path.cwd(), command=command)
