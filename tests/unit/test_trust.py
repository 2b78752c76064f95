"""
Unit tests for the trust set and polkit rules.

Tests cover:
- Rendering the rules from a trust set
- Trusting and untrusting keep the record and the rules in step
- Rejection of invalid names before anything is written
- Rootless mode
"""

import json
import re
from pathlib import Path

import pytest

from bluecap.config import Settings
from bluecap.errors import InvalidCapsuleNameError, ValidationError
from bluecap.schema import CAPSULE_NAME_PATTERN
from bluecap.store import RecordStore
from bluecap.trust import TrustSyncer, ensure_trust_supported, render_rules


def trusted_object(rules: str) -> dict:
    """Parse the TRUSTED object out of a rules file."""
    match = re.search(r"var TRUSTED = (\{.*?\})\n", rules, re.DOTALL)
    assert match is not None
    return json.loads(match.group(1))


@pytest.fixture
def syncer(settings: Settings) -> TrustSyncer:
    return TrustSyncer(settings, RecordStore())


class TestRenderRules:
    """Tests for render_rules."""

    def test_header(self) -> None:
        rules = render_rules([], "com.refi64.Bluecap.run")
        assert rules.startswith("// THIS FILE IS AUTOMATICALLY GENERATED by bluecap\n")
        assert "Do NOT edit" in rules

    def test_empty_trust_set(self) -> None:
        assert trusted_object(render_rules([], "com.refi64.Bluecap.run")) == {}

    def test_trusted_names(self) -> None:
        rules = render_rules(["dev", "web"], "com.refi64.Bluecap.run")
        assert trusted_object(rules) == {"dev": True, "web": True}

    def test_action_id_and_pattern(self) -> None:
        rules = render_rules([], "org.example.run")
        assert "action.id == 'org.example.run'" in rules
        assert f"capsule.match(/{CAPSULE_NAME_PATTERN}/)" in rules
        assert "polkit.Result.NO" in rules
        assert "polkit.Result.YES" in rules
        assert rules.rstrip().endswith("});")

    def test_invalid_name(self) -> None:
        with pytest.raises(InvalidCapsuleNameError):
            render_rules(["dev", "x'});evil()//"], "com.refi64.Bluecap.run")


class TestTrustSyncer:
    """Tests for TrustSyncer."""

    def test_trust(self, syncer: TrustSyncer, settings: Settings) -> None:
        syncer.set_trust("dev", trusted=True)

        assert syncer.trusted_names() == ["dev"]
        assert json.loads(settings.trusted_path.read_text()) == {"trusted": ["dev"]}
        assert trusted_object(settings.polkit_rules_path.read_text()) == {"dev": True}

    def test_untrust_restores(self, syncer: TrustSyncer, settings: Settings) -> None:
        syncer.set_trust("web", trusted=True)
        before = set(syncer.trusted_names())

        syncer.set_trust("dev", trusted=True)
        syncer.set_trust("dev", trusted=False)

        assert set(syncer.trusted_names()) == before
        assert "dev" not in trusted_object(settings.polkit_rules_path.read_text())

    def test_rules_match_record(self, syncer: TrustSyncer, settings: Settings) -> None:
        """After any change the rules list exactly the persisted trust set."""
        for name, trusted in [("a", True), ("b", True), ("a", False), ("c", True), ("c", True)]:
            syncer.set_trust(name, trusted=trusted)
            persisted = json.loads(settings.trusted_path.read_text())["trusted"]
            rules = trusted_object(settings.polkit_rules_path.read_text())
            assert set(rules) == set(persisted)

    def test_invalid_stored_name_aborts(self, syncer: TrustSyncer, settings: Settings) -> None:
        """A tampered record fails before either file is rewritten."""
        settings.trusted_path.parent.mkdir(parents=True)
        settings.trusted_path.write_text(json.dumps({"trusted": ["bad name"]}))

        with pytest.raises(InvalidCapsuleNameError):
            syncer.set_trust("dev", trusted=True)

        assert json.loads(settings.trusted_path.read_text()) == {"trusted": ["bad name"]}
        assert not settings.polkit_rules_path.exists()

    def test_forget(self, syncer: TrustSyncer) -> None:
        syncer.set_trust("dev", trusted=True)
        syncer.forget("dev")
        assert syncer.trusted_names() == []

    def test_forget_untrusted_writes_nothing(self, syncer: TrustSyncer, settings: Settings) -> None:
        syncer.forget("dev")
        assert not Path(settings.polkit_rules_path).exists()


class TestRootless:
    """Trust is only meaningful for the global store."""

    def test_rootless_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ensure_trust_supported(rootless=True)

    def test_global_allowed(self) -> None:
        ensure_trust_supported(rootless=False)
