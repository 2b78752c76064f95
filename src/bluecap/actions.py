"""
Action table for Bluecap.

Every state-changing command is split in two:

    prepare   Runs unprivileged. Parses and validates what the user typed,
              resolves the capsule and checks it exists (or not), and
              returns the positional arguments for the privileged phase.
              Never writes anything.
    handler   Runs privileged (as root through pkexec, or directly in
              rootless mode). Receives only the positional string arguments
              produced by prepare, re-checks them, and performs the
              mutation.

The privileged phase trusts nothing from the unprivileged one except what
it can re-validate, since anyone can run `pkexec bluecap su-create ...`
by hand.

ACTIONS is the one literal table of actions; the privileged command names
are spelled out in it rather than derived from the action names.
"""

import logging
import os
import posixpath
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from bluecap.errors import (
    InvalidOptionError,
    MissingArgumentError,
    ValidationError,
)
from bluecap.exports import validate_export
from bluecap.persistence import normalize_logical_dir
from bluecap.resolver import CapsuleInfo, is_direct_image
from bluecap.sandbox import check_under_home
from bluecap.schema import CapsuleDefinition, DefaultsDefinition, is_valid_image
from bluecap.services import Services
from bluecap.store import merge_set
from bluecap.trust import ensure_trust_supported

logger = logging.getLogger(__name__)

TRUE = "true"
FALSE = "false"


class Action(str, Enum):
    """State-changing commands that cross the privilege boundary."""

    CREATE = "create"
    DELETE = "delete"
    TRUST = "trust"
    OPTIONS_MODIFY = "options-modify"
    PERSISTENCE = "persistence"
    RUN = "run"
    EXPORT = "export"


PrepareFunction = Callable[..., list[str]]
HandlerFunction = Callable[[Services, Sequence[str]], None]


@dataclass(frozen=True)
class ActionSpec:
    """
    One row of the action table.

    Attributes:
        action: The user-facing action
        privileged_command: argv token selecting the handler after escalation
        prepare: Unprivileged validator, returns the privileged arguments
        handler: Privileged handler
    """

    action: Action
    privileged_command: str
    prepare: PrepareFunction
    handler: HandlerFunction


# =============================================================================
# Helpers
# =============================================================================


def _resolve(services: Services, identifier: str, should_exist: bool) -> CapsuleInfo:
    info = services.resolver.resolve(identifier, should_exist=should_exist)
    # Handlers resolve by name, so a link into the other store would be
    # re-resolved against the wrong one.
    if info.rootless != services.identity.rootless:
        mode = "rootless" if info.rootless else "global"
        raise ValidationError(
            message=f"Capsule {info.name} is a {mode} capsule.",
            suggestion="Use --rootless for rootless capsules, and omit it otherwise",
        )
    return info


def _flag(value: bool) -> str:
    return TRUE if value else FALSE


def _parse_flag(value: str) -> bool:
    if value == TRUE:
        return True
    if value == FALSE:
        return False
    raise ValidationError(message=f"Invalid flag value: {value}")


def _expect(args: Sequence[str], count: int, command: str, variadic: bool = False) -> None:
    if len(args) < count or (not variadic and len(args) != count):
        raise ValidationError(
            message=f"{command} got {len(args)} argument(s), expected {count}",
            context={"args": list(args)},
        )


def _check_image(image: str) -> str:
    if not is_valid_image(image):
        raise ValidationError(message=f"Invalid image reference: {image}")
    return image


def _normalize_option(option: str) -> str:
    normalized = option.lstrip("-")
    if not normalized:
        raise InvalidOptionError(option=option)
    return normalized


def _read_defaults(services: Services) -> DefaultsDefinition:
    return services.store.read(services.settings.defaults_path, DefaultsDefinition)


# =============================================================================
# create
# =============================================================================


def prepare_create(services: Services, capsule: str, image: str) -> list[str]:
    info = _resolve(services, capsule, should_exist=False)
    return [info.name, _check_image(image)]


def handle_create(services: Services, args: Sequence[str]) -> None:
    """Create a capsule with the administrator's default options."""
    _expect(args, 2, "su-create")
    name, image = args
    info = _resolve(services, name, should_exist=False)
    defaults = _read_defaults(services)

    definition = CapsuleDefinition(
        image=_check_image(image),
        options=list(defaults.options),
        persistence=[],
    )
    services.store.write(info.path, definition)
    logger.debug("Created %s from %s", info.name, image)


# =============================================================================
# delete
# =============================================================================


def prepare_delete(services: Services, capsule: str, keep_persistence: bool = False) -> list[str]:
    info = _resolve(services, capsule, should_exist=True)
    return [info.name, _flag(keep_persistence)]


def handle_delete(services: Services, args: Sequence[str]) -> None:
    """
    Delete a capsule.

    Persisted files are purged unless the keep flag is set, and the capsule
    leaves the trust set so a later capsule with the same name starts out
    untrusted.
    """
    _expect(args, 2, "su-delete")
    name, keep = args[0], _parse_flag(args[1])
    info = _resolve(services, name, should_exist=True)

    if not keep:
        services.persistence.purge(info.name)
    if not services.identity.rootless:
        services.trust.forget(info.name)
    services.store.remove(info.path)
    logger.debug("Deleted %s (kept persistence: %s)", info.name, keep)


# =============================================================================
# trust
# =============================================================================


def prepare_trust(services: Services, capsule: str, untrust: bool = False) -> list[str]:
    ensure_trust_supported(services.identity.rootless)
    info = _resolve(services, capsule, should_exist=True)
    return [info.name, _flag(untrust)]


def handle_trust(services: Services, args: Sequence[str]) -> None:
    _expect(args, 2, "su-trust")
    name, untrust = args[0], _parse_flag(args[1])
    ensure_trust_supported(services.identity.rootless)
    info = _resolve(services, name, should_exist=True)
    services.trust.set_trust(info.name, trusted=not untrust)


# =============================================================================
# options-modify
# =============================================================================


def prepare_options_modify(
    services: Services,
    capsule: str,
    options: Sequence[str],
    remove: bool = False,
) -> list[str]:
    info = _resolve(services, capsule, should_exist=True)
    if not options:
        raise MissingArgumentError(
            argument="option",
            message="At least one option must be given.",
        )
    return [info.name, _flag(remove), *(_normalize_option(o) for o in options)]


def handle_options_modify(services: Services, args: Sequence[str]) -> None:
    """Add options to (or remove them from) a capsule."""
    _expect(args, 3, "su-options-modify", variadic=True)
    name, remove = args[0], _parse_flag(args[1])
    options = [_normalize_option(o) for o in args[2:]]
    info = _resolve(services, name, should_exist=True)

    definition = services.store.read(info.path, CapsuleDefinition)
    updated = merge_set(definition.options, options, remove=remove)
    services.store.write(info.path, definition.model_copy(update={"options": updated}))
    logger.debug("Options of %s are now %s", info.name, updated)


# =============================================================================
# persistence
# =============================================================================


def prepare_persistence(
    services: Services,
    capsule: str,
    directory: str,
    remove: bool = False,
    keep_persistence: bool = False,
) -> list[str]:
    if keep_persistence and not remove:
        raise InvalidOptionError(
            option="--keep-persistence",
            message="-k doesn't make sense without -r",
        )
    info = _resolve(services, capsule, should_exist=True)
    # Relative directories are taken relative to the caller's cwd
    logical_dir = normalize_logical_dir(os.path.abspath(directory))
    return [info.name, logical_dir, _flag(remove), _flag(keep_persistence)]


def handle_persistence(services: Services, args: Sequence[str]) -> None:
    _expect(args, 4, "su-persistence")
    name, directory = args[0], args[1]
    remove, keep = _parse_flag(args[2]), _parse_flag(args[3])
    if keep and not remove:
        raise InvalidOptionError(option="--keep-persistence")

    info = _resolve(services, name, should_exist=True)
    if remove:
        services.persistence.remove(info, directory, keep_backing=keep)
    else:
        services.persistence.add(info, directory)


# =============================================================================
# run
# =============================================================================


def prepare_run(
    services: Services,
    target: str,
    workdir: Path | str,
    command: Sequence[str],
) -> list[str]:
    """
    Validate a run before escalating.

    The working directory is checked against the original caller's home
    here, so a run from outside the home directory never reaches pkexec.
    """
    workdir = os.path.abspath(workdir)
    if not os.path.isdir(workdir):
        raise ValidationError(message=f"Non-existent working directory: {workdir}")
    check_under_home(workdir, services.identity.home())

    if is_direct_image(target):
        _check_image(target[1:])
        name = target
    else:
        name = _resolve(services, target, should_exist=True).name

    if not command:
        raise MissingArgumentError(argument="command")
    return [name, workdir, *command]


def handle_run(services: Services, args: Sequence[str]) -> None:
    """Replace the process with the container runtime."""
    _expect(args, 3, "su-run", variadic=True)
    target, workdir, command = args[0], args[1], list(args[2:])

    if is_direct_image(target):
        # Direct-image runs get the defaults and nothing persists
        definition = CapsuleDefinition(
            image=_check_image(target[1:]),
            options=list(_read_defaults(services).options),
        )
    else:
        info = _resolve(services, target, should_exist=True)
        definition = services.store.read(info.path, CapsuleDefinition)

    logger.debug("su-run: %s in %s: %s", target, workdir, command)
    invocation = services.sandbox.build(target, definition, workdir, command)
    services.sandbox.launch(invocation)


# =============================================================================
# export
# =============================================================================


def prepare_export(
    services: Services,
    capsule: str,
    executable: str,
    exposed_name: str | None = None,
) -> list[str]:
    info = _resolve(services, capsule, should_exist=True)
    exposed_name = exposed_name or posixpath.basename(executable.rstrip("/"))
    validate_export(exposed_name, executable)
    return [info.name, exposed_name, executable]


def handle_export(services: Services, args: Sequence[str]) -> None:
    _expect(args, 3, "su-export")
    name, exposed_name, command = args
    info = _resolve(services, name, should_exist=True)
    services.exports.export(info.name, exposed_name, command)


# =============================================================================
# Table
# =============================================================================

ACTIONS: dict[Action, ActionSpec] = {
    Action.CREATE: ActionSpec(Action.CREATE, "su-create", prepare_create, handle_create),
    Action.DELETE: ActionSpec(Action.DELETE, "su-delete", prepare_delete, handle_delete),
    Action.TRUST: ActionSpec(Action.TRUST, "su-trust", prepare_trust, handle_trust),
    Action.OPTIONS_MODIFY: ActionSpec(
        Action.OPTIONS_MODIFY,
        "su-options-modify",
        prepare_options_modify,
        handle_options_modify,
    ),
    Action.PERSISTENCE: ActionSpec(
        Action.PERSISTENCE,
        "su-persistence",
        prepare_persistence,
        handle_persistence,
    ),
    Action.RUN: ActionSpec(Action.RUN, "su-run", prepare_run, handle_run),
    Action.EXPORT: ActionSpec(Action.EXPORT, "su-export", prepare_export, handle_export),
}

PRIVILEGED_COMMANDS: dict[str, ActionSpec] = {
    spec.privileged_command: spec for spec in ACTIONS.values()
}

