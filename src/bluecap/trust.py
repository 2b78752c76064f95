"""
Trust set and polkit rules for Bluecap.

Trusted capsules run without an authorization prompt. The trust set is
stored twice: as polkit-trusted.json, the record Bluecap reads back, and as
the generated polkit rules file, the copy polkit actually evaluates. Both
are rewritten on every change and the rules are always rendered from
scratch out of the full trust set, never patched.

Security Note:
    Capsule names are interpolated into JavaScript. Every name is checked
    against the capsule name pattern right before rendering, and the rules
    themselves reject any capsule name that fails the same pattern before
    looking it up.

    The rules only look at the token right after the program (or after the
    forwarded identity context). Matching "su-run" anywhere in the command
    line would let `bluecap su-create x su-run trusted` pass as trusted.
"""

import json
import logging

from jinja2 import Environment, StrictUndefined

from bluecap.config import Settings
from bluecap.errors import ValidationError
from bluecap.identity import CONTEXT_ARG
from bluecap.schema import CAPSULE_NAME_PATTERN, TrustRecord, validate_capsule_name
from bluecap.store import RecordStore, merge_set

logger = logging.getLogger(__name__)

RULES_TEMPLATE = """\
// THIS FILE IS AUTOMATICALLY GENERATED by bluecap
// Do NOT edit: your changes will be overwritten!

var TRUSTED = {{ trusted }}

polkit.addRule(function (action, subject) {
    if (action.id == '{{ action_id }}') {
        var cmdline = action.lookup('command_line')
        var match = cmdline.match(/^\\S+ (?:{{ context_arg }}=\\S+ )?su-run (\\S+)/)
        if (!match)
            return polkit.Result.NOT_HANDLED
        var capsule = match[1]
        polkit.log('bluecap:' + capsule)
        if (!capsule.match(/{{ pattern }}/))
            return polkit.Result.NO
        if (TRUSTED.hasOwnProperty(capsule))
            return polkit.Result.YES
    }

    return polkit.Result.NOT_HANDLED
});
"""

_environment = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


def render_rules(trusted: list[str], action_id: str) -> str:
    """
    Render the polkit rules for a trust set.

    Args:
        trusted: Trusted capsule names
        action_id: polkit action id of the bluecap run action

    Returns:
        The complete rules file

    Raises:
        InvalidCapsuleNameError: If any name fails the capsule name pattern
    """
    for name in trusted:
        validate_capsule_name(name)

    # polkit wants an object with a true value per trusted key
    trusted_object = json.dumps({name: True for name in trusted}, indent=4)
    return _environment.from_string(RULES_TEMPLATE).render(
        trusted=trusted_object,
        action_id=action_id,
        context_arg=CONTEXT_ARG,
        pattern=CAPSULE_NAME_PATTERN,
    )


class TrustSyncer:
    """
    Keeps the trust record and the polkit rules in step.

    Example:
        >>> syncer = TrustSyncer(settings, RecordStore())
        >>> syncer.set_trust("dev", trusted=True)
        >>> "dev" in syncer.trusted_names()
        True
    """

    def __init__(self, settings: Settings, store: RecordStore) -> None:
        self.settings = settings
        self.store = store

    def trusted_names(self) -> list[str]:
        """Current trust set (empty if never written)."""
        record = self.store.read_optional(self.settings.trusted_path, TrustRecord)
        return list(record.trusted) if record else []

    def set_trust(self, name: str, trusted: bool) -> list[str]:
        """
        Trust or untrust a capsule.

        The trust record and the rules file are two separate atomic
        renames. A crash between them leaves the rules one change behind
        the record until the next set_trust rewrites both.

        Args:
            name: Capsule name (already resolved)
            trusted: True to trust, False to untrust

        Returns:
            The updated trust set
        """
        validate_capsule_name(name)
        current = self.trusted_names()
        updated = merge_set(current, [name], remove=not trusted)
        # Render first so an invalid stored name aborts before anything is written
        rules = render_rules(updated, self.settings.polkit_action_id)

        self.store.write(self.settings.trusted_path, TrustRecord(trusted=updated))
        self.store.write_atomic(self.settings.polkit_rules_path, rules)
        logger.debug("Trust set is now %s", updated)
        return updated

    def forget(self, name: str) -> None:
        """Drop a capsule from the trust set if it is there."""
        if name in self.trusted_names():
            self.set_trust(name, trusted=False)


def ensure_trust_supported(rootless: bool) -> None:
    """Trust only exists for the global store, where polkit is involved."""
    if rootless:
        raise ValidationError(
            message="Capsules cannot be trusted in rootless mode.",
            suggestion="Rootless runs never ask for authorization",
        )
