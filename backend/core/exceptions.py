"""Error kinds raised by the Smart Specs session core."""

from __future__ import annotations


class SmartSpecsError(Exception):
    """Base class for every error the session core raises."""


class InvalidStateTransition(SmartSpecsError):
    """A command was issued that is not valid for the current state.

    The component that raises it guarantees its state is unchanged.
    """

    def __init__(self, current: str, attempted: str) -> None:
        self.current = current
        self.attempted = attempted
        super().__init__(f"cannot {attempted} while {current}")


class ProviderUnavailable(SmartSpecsError):
    """An external capability provider (classifier, position, speech, routing) failed."""

    def __init__(self, provider: str, reason: str = "") -> None:
        self.provider = provider
        self.reason = reason
        msg = f"{provider} provider unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidRoute(SmartSpecsError, ValueError):
    """Route payload is empty or malformed."""
