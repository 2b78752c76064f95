"""
Sandbox invocation for Bluecap.

This module turns a capsule into a single container runtime invocation:

    podman run --security-opt=label=disable --volume=<home>:/run/home
        --name=<capsule>-<unique> --workdir=/run/home/<relative cwd> --rm
        --attach=stdin --attach=stdout --attach=stderr --tty
        --env=HOME=/var/data --tmpfs=/var/data --entrypoint=sh
        [--user=<uid>] [--<option>...] [--volume=<host>:<dir>...]
        <image> -l -c 'exec "$@"' <command...>

Security Note:
    The caller's working directory must be their home directory or below
    it; only the home directory is mounted into the sandbox. Unless running
    rootless, the sandboxed process runs as the original caller, never as
    the root user that launched the runtime.

The entrypoint shell execs the command so it becomes the container's main
process and receives signals directly.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from bluecap.config import Settings
from bluecap.errors import ContainmentError, MissingArgumentError
from bluecap.identity import IdentityContext
from bluecap.persistence import PersistenceManager
from bluecap.process import ExecFunction, replace_process
from bluecap.schema import CapsuleDefinition
from bluecap.store import generate_id

logger = logging.getLogger(__name__)

EXEC_SCRIPT = 'exec "$@"'


def check_under_home(workdir: Path | str, home: Path | str) -> str:
    """
    Check that workdir is home or below it.

    Both paths are resolved first, and the comparison is per path
    component, so /home/al does not contain /home/alice.

    Args:
        workdir: The directory the command should run in
        home: The original caller's home directory

    Returns:
        workdir relative to home ("" for home itself)

    Raises:
        ContainmentError: If workdir is outside home
    """
    resolved_home = Path(os.path.realpath(home))
    resolved_dir = Path(os.path.realpath(workdir))
    try:
        relative = resolved_dir.relative_to(resolved_home)
    except ValueError as e:
        logger.debug("check_under_home: resolved_home = %s, dir = %s", resolved_home, resolved_dir)
        raise ContainmentError(workdir=str(workdir), home=str(resolved_home)) from e
    return "" if relative == Path(".") else relative.as_posix()


def container_name(label: str) -> str:
    """Unique container name for one launch of label."""
    safe = re.sub(r"[^a-zA-Z0-9_.-]", "_", label).lstrip("_.-") or "bluecap"
    return f"{safe}-{generate_id()}"


@dataclass(frozen=True)
class SandboxInvocation:
    """
    A complete container runtime invocation.

    Attributes:
        program: The container runtime
        args: Arguments, not including argv[0]
    """

    program: str
    args: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


class SandboxInvoker:
    """
    Builds and launches sandbox invocations.

    Attributes:
        settings: External program names and in-sandbox paths
        identity: The original caller
        persistence: Maps persistent directories to host storage
    """

    def __init__(
        self,
        settings: Settings,
        identity: IdentityContext,
        persistence: PersistenceManager,
        exec_fn: ExecFunction = replace_process,
    ) -> None:
        self.settings = settings
        self.identity = identity
        self.persistence = persistence
        self.exec_fn = exec_fn

    def build(
        self,
        label: str,
        definition: CapsuleDefinition,
        workdir: Path | str,
        command: list[str],
    ) -> SandboxInvocation:
        """
        Build the invocation for one command.

        Args:
            label: Capsule name (or image, for direct-image runs)
            definition: Image, options and persistent directories to apply
            workdir: Host working directory, inside the caller's home
            command: The command and its arguments, passed through verbatim

        Returns:
            The invocation

        Raises:
            ContainmentError: If workdir is outside the caller's home
            MissingArgumentError: If command is empty
        """
        if not command:
            raise MissingArgumentError(argument="command")

        home = self.identity.home()
        relative = check_under_home(workdir, home)
        sandbox_home = self.settings.sandbox_home
        sandbox_workdir = f"{sandbox_home}/{relative}" if relative else sandbox_home

        args = [
            "run",
            "--security-opt=label=disable",
            f"--volume={home}:{sandbox_home}",
            f"--name={container_name(label)}",
            f"--workdir={sandbox_workdir}",
            "--rm",
            "--attach=stdin",
            "--attach=stdout",
            "--attach=stderr",
            "--tty",
            f"--env=HOME={self.settings.sandbox_data}",
            f"--tmpfs={self.settings.sandbox_data}",
            f"--entrypoint={self.settings.sandbox_shell}",
        ]

        if self.identity.verbose:
            args.insert(0, "--log-level=debug")

        if not self.identity.rootless:
            args.append(f"--user={self.identity.original_uid}")

        args.extend(f"--{option}" for option in definition.options)
        for directory in definition.persistence:
            host = self.persistence.host_path(label, directory)
            args.append(f"--volume={host}:{directory}")

        args.append(definition.image)
        args.extend(["-l", "-c", EXEC_SCRIPT, command[0]])
        args.extend(command)

        return SandboxInvocation(program=self.settings.container_runtime, args=args)

    def launch(self, invocation: SandboxInvocation) -> NoReturn:
        """Hand the process over to the container runtime."""
        self.exec_fn(invocation.program, invocation.args)
