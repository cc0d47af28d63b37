# coding=utf-8
from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors that may be surfaced to a client."""


class ConfigurationError(RelayError):
    """Missing or invalid credentials/configuration. Never retried."""


class InvalidTransition(RelayError):
    def __init__(self, what: str, state: object, action: str) -> None:
        self.what = str(what)
        self.state = state
        self.action = str(action)
        label = getattr(state, "value", state)
        super().__init__(f"cannot {action} {what} in state {label}")


class RecognitionError(RelayError):
    transient = False


class TransientUpstreamError(RecognitionError):
    """Idle/timeout class error from the recognition service."""

    transient = True


class FatalUpstreamError(RecognitionError):
    pass


class TranslationError(RelayError):
    pass


class RateLimitError(TranslationError):
    pass


class SynthesisError(RelayError):
    pass


class CaptureUnavailableError(RelayError):
    pass


class ChannelClosedError(RelayError):
    pass
