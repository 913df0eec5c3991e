"""Unit tests for angle_finder.credentials."""

from __future__ import annotations

from angle_finder.credentials import (
    PRIMARY_KEY_ENV,
    SECONDARY_KEY_ENV,
    CredentialSelector,
    get_credential_selector,
    set_credential_selector,
)
from angle_finder.records import CredentialSlot


class TestFromEnv:
    def test_reads_both_keys(self) -> None:
        selector = CredentialSelector.from_env(
            {PRIMARY_KEY_ENV: " pk ", SECONDARY_KEY_ENV: "sk"}
        )
        assert selector.current() is CredentialSlot.PRIMARY
        assert selector.api_key() == "pk"
        assert selector.has_secondary

    def test_no_keys_uses_sdk_default(self) -> None:
        selector = CredentialSelector.from_env({})
        assert selector.current() is CredentialSlot.DEFAULT
        assert selector.api_key() is None
        assert not selector.has_secondary


class TestSwitching:
    def test_switch_is_sticky_and_idempotent(self) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        assert selector.switch_to_secondary() is True
        assert selector.switch_to_secondary() is True
        assert selector.current() is CredentialSlot.SECONDARY
        assert selector.api_key() == "sk"
        assert selector.api_key(CredentialSlot.PRIMARY) == "pk"
        assert selector.switch_count == 1

    def test_switch_without_secondary(self) -> None:
        selector = CredentialSelector(primary="pk")
        assert selector.switch_to_secondary() is False
        assert selector.current() is CredentialSlot.PRIMARY

    def test_secondary_only_after_default(self) -> None:
        selector = CredentialSelector(secondary="sk")
        assert selector.current() is CredentialSlot.DEFAULT
        selector.switch_to_secondary()
        assert selector.current() is CredentialSlot.SECONDARY

    def test_reset(self) -> None:
        selector = CredentialSelector(primary="pk", secondary="sk")
        selector.switch_to_secondary()
        selector.reset()
        assert selector.current() is CredentialSlot.PRIMARY
        assert selector.stats == {
            "current": "primary",
            "has_secondary": True,
            "switch_count": 1,
        }


def test_process_wide_selector_is_shared() -> None:
    custom = CredentialSelector(primary="x")
    set_credential_selector(custom)
    assert get_credential_selector() is custom
    assert get_credential_selector() is get_credential_selector()
