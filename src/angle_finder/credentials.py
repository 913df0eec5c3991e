"""Process-wide primary/secondary LLM credential selection.

The active credential is shared, sticky state: once any call switches to
the secondary key after a rate limit, every later call prefers the
secondary until :meth:`CredentialSelector.reset` is invoked. Concurrent
callers may race to switch; switching is idempotent.

Keys are read from the environment::

    ANTHROPIC_API_KEY_PRIMARY=...
    ANTHROPIC_API_KEY_SECONDARY=...

When no primary key is configured the provider SDK's own default
(``ANTHROPIC_API_KEY``) is used.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import structlog

from angle_finder.records import CredentialSlot

if TYPE_CHECKING:
    from collections.abc import Mapping

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

PRIMARY_KEY_ENV = "ANTHROPIC_API_KEY_PRIMARY"
SECONDARY_KEY_ENV = "ANTHROPIC_API_KEY_SECONDARY"


class CredentialSelector:
    """Chooses which API key the next LLM call should use.

    Attributes:
        switch_count: Number of primary-to-secondary transitions so far.
    """

    def __init__(self, primary: str | None = None, secondary: str | None = None) -> None:
        """Initialize the selector.

        Args:
            primary: Primary API key, or ``None`` to rely on the SDK default.
            secondary: Fallback API key used after a rate limit.
        """
        self._primary = primary or None
        self._secondary = secondary or None
        self._use_secondary = False
        self.switch_count = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CredentialSelector:
        """Build a selector from environment variables."""
        env = os.environ if environ is None else environ
        primary = env.get(PRIMARY_KEY_ENV, "").strip()
        secondary = env.get(SECONDARY_KEY_ENV, "").strip()
        if secondary:
            logger.debug("secondary_credential_configured", source=SECONDARY_KEY_ENV)
        return cls(primary=primary, secondary=secondary)

    @property
    def has_secondary(self) -> bool:
        return self._secondary is not None

    def current(self) -> CredentialSlot:
        """Return the slot the next call should use."""
        if self._use_secondary and self._secondary is not None:
            return CredentialSlot.SECONDARY
        if self._primary is not None:
            return CredentialSlot.PRIMARY
        return CredentialSlot.DEFAULT

    def api_key(self, slot: CredentialSlot | None = None) -> str | None:
        """Return the key for ``slot`` (default: the current slot).

        ``None`` means "let the SDK resolve its own default key".
        """
        slot = slot or self.current()
        if slot is CredentialSlot.SECONDARY:
            return self._secondary
        if slot is CredentialSlot.PRIMARY:
            return self._primary
        return None

    def switch_to_secondary(self) -> bool:
        """Make the secondary key active.

        Returns:
            ``True`` if a secondary key is configured (whether or not this
            call changed anything), ``False`` otherwise.
        """
        if self._secondary is None:
            return False
        if not self._use_secondary:
            self._use_secondary = True
            self.switch_count += 1
            logger.warning("credential_switched", to=CredentialSlot.SECONDARY)
        return True

    def reset(self) -> None:
        """Return to the primary key."""
        if self._use_secondary:
            logger.info("credential_reset", to=CredentialSlot.PRIMARY)
        self._use_secondary = False

    @property
    def stats(self) -> dict[str, object]:
        return {
            "current": str(self.current()),
            "has_secondary": self.has_secondary,
            "switch_count": self.switch_count,
        }


_default_selector: CredentialSelector | None = None


def get_credential_selector() -> CredentialSelector:
    """Return the process-wide selector, creating it from the environment."""
    global _default_selector
    if _default_selector is None:
        _default_selector = CredentialSelector.from_env()
    return _default_selector


def set_credential_selector(selector: CredentialSelector | None) -> None:
    """Replace (or with ``None``, forget) the process-wide selector."""
    global _default_selector
    _default_selector = selector
