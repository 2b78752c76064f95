"""
Pytest configuration and fixtures for Bluecap tests.

This module provides shared fixtures used across unit, integration,
and security tests. Every fixture keeps state inside a temporary
directory: Settings point /etc and /var/lib there, and the identity's
home directory is overridden to a directory inside it.

Process replacement is never real in tests. fake_exec raises ExecCalled
with the argv it was given, so escalation and sandbox launches can be
inspected without leaving the test process.
"""

import json
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Generator, NoReturn

import pytest

from bluecap.config import Settings
from bluecap.dispatch import PrivilegeDispatcher
from bluecap.identity import IdentityContext
from bluecap.services import Services

PROGRAM = "/usr/bin/bluecap"


class ExecCalled(Exception):
    """Raised by fake_exec in place of replacing the process."""

    def __init__(self, program: str, args: Sequence[str]) -> None:
        super().__init__(program)
        self.program = program
        self.argv = [program, *args]


def raise_exec(program: str, args: Sequence[str]) -> NoReturn:
    raise ExecCalled(program, args)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(os.path.realpath(tmpdir))


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    """Settings rooted in the temporary directory."""
    return Settings(
        sysconfdir=temp_dir / "etc",
        sharedstatedir=temp_dir / "var" / "lib",
    )


@pytest.fixture
def home(temp_dir: Path) -> Path:
    """The original caller's home directory."""
    path = temp_dir / "home" / "user"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def identity(home: Path) -> IdentityContext:
    """The current user, with the temporary home directory."""
    return IdentityContext(original_uid=os.getuid()).with_home(home)


@pytest.fixture
def defaults(settings: Settings) -> Path:
    """Administrator defaults with a single option."""
    path = settings.defaults_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"options": ["net=none"]}))
    return path


@pytest.fixture
def fake_exec():
    """Process replacement that raises ExecCalled instead."""
    return raise_exec


@pytest.fixture
def services(settings: Settings, identity: IdentityContext) -> Services:
    """Components wired to the temporary layout."""
    return Services.create(settings, identity, program=PROGRAM, exec_fn=raise_exec)


@pytest.fixture
def privileged(services: Services) -> PrivilegeDispatcher:
    """Dispatcher that believes it runs as root."""
    return PrivilegeDispatcher(services, exec_fn=raise_exec, euid=lambda: 0)


@pytest.fixture
def unprivileged(services: Services) -> PrivilegeDispatcher:
    """Dispatcher that has to escalate."""
    return PrivilegeDispatcher(services, exec_fn=raise_exec, euid=lambda: 1000)


def write_capsule(
    settings: Settings,
    name: str,
    image: str = "image:bar",
    options: list[str] | None = None,
    persistence: list[str] | None = None,
) -> Path:
    """Write a capsule record straight into the global store."""
    path = settings.capsules_path / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "image": image,
        "options": options or [],
        "persistence": persistence or [],
    }))
    return path


def read_json(path: Path) -> dict:
    return json.loads(path.read_text())
