"""
Unit tests for privilege dispatch.

Tests cover:
- Splitting run command lines
- Escalation argv when the process lacks rights
- In-process handling when already privileged or rootless
- Privileged command entry and authorization
- Re-entry through export shims
"""

from pathlib import Path

import pytest
from conftest import PROGRAM, ExecCalled, raise_exec, write_capsule

from bluecap.actions import ACTIONS, PRIVILEGED_COMMANDS, Action
from bluecap.config import Settings
from bluecap.dispatch import PrivilegeDispatcher, RunRequest, split_run_arguments
from bluecap.errors import (
    AuthorizationError,
    CapsuleNotFoundError,
    InvalidOptionError,
    MissingArgumentError,
    ValidationError,
)
from bluecap.identity import IdentityContext
from bluecap.services import Services


class TestSplitRunArguments:
    """Tests for split_run_arguments."""

    def test_capsule_and_command(self) -> None:
        assert split_run_arguments(["dev", "make", "-j4"]) == RunRequest(
            capsule="dev",
            command=["make", "-j4"],
        )

    def test_workdir_before_capsule(self) -> None:
        request = split_run_arguments(["-w", "/src", "dev", "ls"])
        assert request.workdir == "/src"
        assert request.capsule == "dev"
        assert request.command == ["ls"]

    def test_workdir_after_capsule(self) -> None:
        request = split_run_arguments(["dev", "--workdir", "/src", "ls", "-la"])
        assert request.workdir == "/src"
        assert request.command == ["ls", "-la"]

    def test_workdir_equals_form(self) -> None:
        request = split_run_arguments(["--workdir=/src", "dev", "ls"])
        assert request.workdir == "/src"

    def test_options_after_command_belong_to_command(self) -> None:
        request = split_run_arguments(["dev", "grep", "-w", "--workdir=x", "pattern"])
        assert request.workdir is None
        assert request.command == ["grep", "-w", "--workdir=x", "pattern"]

    def test_double_dash(self) -> None:
        request = split_run_arguments(["dev", "--", "-weird-command", "arg"])
        assert request.command == ["-weird-command", "arg"]

    def test_double_dash_before_capsule(self) -> None:
        request = split_run_arguments(["--", "dev", "ls"])
        assert request.capsule == "dev"
        assert request.command == ["ls"]

    def test_direct_image(self) -> None:
        assert split_run_arguments(["@fedora", "sh"]).capsule == "@fedora"

    def test_missing_capsule(self) -> None:
        with pytest.raises(MissingArgumentError) as exc_info:
            split_run_arguments([])
        assert exc_info.value.argument == "capsule"

    def test_missing_command(self) -> None:
        with pytest.raises(MissingArgumentError) as exc_info:
            split_run_arguments(["dev"])
        assert exc_info.value.argument == "command"

    def test_missing_command_after_options(self) -> None:
        with pytest.raises(MissingArgumentError):
            split_run_arguments(["dev", "-w", "/src"])

    def test_unknown_option(self) -> None:
        with pytest.raises(InvalidOptionError) as exc_info:
            split_run_arguments(["--bogus", "dev", "ls"])
        assert exc_info.value.option == "--bogus"

    def test_workdir_without_value(self) -> None:
        with pytest.raises(ValidationError):
            split_run_arguments(["dev", "-w"])


class TestActionTable:
    """Tests for the static action table."""

    def test_every_action_has_a_row(self) -> None:
        assert set(ACTIONS) == set(Action)

    def test_privileged_command_names(self) -> None:
        assert sorted(PRIVILEGED_COMMANDS) == [
            "su-create",
            "su-delete",
            "su-export",
            "su-options-modify",
            "su-persistence",
            "su-run",
            "su-trust",
        ]


class TestEscalation:
    """Tests for dispatch without rights."""

    def test_escalation_argv(self, unprivileged: PrivilegeDispatcher, services: Services) -> None:
        with pytest.raises(ExecCalled) as exc_info:
            unprivileged.dispatch(Action.CREATE, ["dev", "image:bar"])

        assert exc_info.value.argv == [
            "pkexec",
            PROGRAM,
            services.identity.to_argument(),
            "su-create",
            "dev",
            "image:bar",
        ]

    def test_request_validates_before_escalating(
        self,
        unprivileged: PrivilegeDispatcher,
        defaults: Path,
    ) -> None:
        """A failing prepare step never reaches pkexec."""
        with pytest.raises(CapsuleNotFoundError):
            unprivileged.request(Action.DELETE, capsule="missing")

    def test_request_escalates_prepared_args(
        self,
        unprivileged: PrivilegeDispatcher,
        settings: Settings,
    ) -> None:
        write_capsule(settings, "dev")
        with pytest.raises(ExecCalled) as exc_info:
            unprivileged.request(Action.TRUST, capsule="dev", untrust=True)
        assert exc_info.value.argv[-3:] == ["su-trust", "dev", "true"]

    def test_nothing_written_before_escalation(
        self,
        unprivileged: PrivilegeDispatcher,
        settings: Settings,
        defaults: Path,
    ) -> None:
        with pytest.raises(ExecCalled):
            unprivileged.request(Action.CREATE, capsule="dev", image="image:bar")
        assert not (settings.capsules_path / "dev.json").exists()


class TestInProcess:
    """Tests for dispatch with rights."""

    def test_runs_handler_and_exits(
        self,
        privileged: PrivilegeDispatcher,
        settings: Settings,
        defaults: Path,
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            privileged.request(Action.CREATE, capsule="dev", image="image:bar")

        assert exc_info.value.code == 0
        assert (settings.capsules_path / "dev.json").is_file()

    def test_rootless_never_escalates(self, settings: Settings, home: Path) -> None:
        identity = IdentityContext(original_uid=1000, rootless=True).with_home(home)
        services = Services.create(settings, identity, program=PROGRAM, exec_fn=raise_exec)
        dispatcher = PrivilegeDispatcher(services, exec_fn=raise_exec, euid=lambda: 1000)

        assert dispatcher.has_privileges()
        settings.defaults_path.parent.mkdir(parents=True)
        settings.defaults_path.write_text('{"options": []}')

        with pytest.raises(SystemExit):
            dispatcher.request(Action.CREATE, capsule="dev", image="image:bar")
        assert (home / ".local/share/bluecap/capsules/dev.json").is_file()


class TestRunPrivileged:
    """Tests for su-* entry."""

    def test_requires_rights(self, unprivileged: PrivilegeDispatcher) -> None:
        with pytest.raises(AuthorizationError):
            unprivileged.run_privileged("su-create", ["dev", "image:bar"])

    def test_unknown_command(self, privileged: PrivilegeDispatcher) -> None:
        with pytest.raises(ValidationError):
            privileged.run_privileged("su-bogus", [])

    def test_runs_handler(
        self,
        privileged: PrivilegeDispatcher,
        settings: Settings,
        defaults: Path,
    ) -> None:
        with pytest.raises(SystemExit):
            privileged.run_privileged("su-create", ["dev", "image:bar"])
        assert (settings.capsules_path / "dev.json").is_file()


class TestRunExported:
    """Tests for shim re-entry."""

    def test_equivalent_to_run(
        self,
        unprivileged: PrivilegeDispatcher,
        services: Services,
        settings: Settings,
        home: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        write_capsule(settings, "dev")
        shim = services.exports.export("dev", "mc", "mycmd")
        monkeypatch.chdir(home)

        with pytest.raises(ExecCalled) as exc_info:
            unprivileged.run_exported(["run-exported-internal:dev", str(shim), "extra-arg"])

        assert exc_info.value.argv[-5:] == ["su-run", "dev", str(home), "mycmd", "extra-arg"]

    def test_missing_shim_path(self, unprivileged: PrivilegeDispatcher) -> None:
        with pytest.raises(MissingArgumentError):
            unprivileged.run_exported(["run-exported-internal:dev"])

    def test_rootless_shim(
        self,
        settings: Settings,
        home: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        identity = IdentityContext(original_uid=1000, rootless=True).with_home(home)
        services = Services.create(settings, identity, program=PROGRAM, exec_fn=raise_exec)
        dispatcher = PrivilegeDispatcher(services, exec_fn=raise_exec, euid=lambda: 1000)
        record = settings.user_capsules_path(home) / "dev.json"
        record.parent.mkdir(parents=True)
        record.write_text('{"image": "user-image"}')
        shim = services.exports.export("dev", "mc", "mycmd")
        monkeypatch.chdir(home)

        with pytest.raises(ExecCalled) as exc_info:
            dispatcher.run_exported(["run-exported-internal:rootless:dev", str(shim)])

        assert "user-image" in exc_info.value.argv

    def test_rootless_shim_in_global_mode(self, unprivileged: PrivilegeDispatcher) -> None:
        with pytest.raises(ValidationError):
            unprivileged.run_exported(["run-exported-internal:rootless:dev", "/nonexistent"])
