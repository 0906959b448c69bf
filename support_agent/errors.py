"""Error taxonomy shared by the text and voice surfaces."""

from __future__ import annotations


class SupportAgentError(Exception):
    """Base class for errors raised by the support agent."""


class ConfigurationError(SupportAgentError):
    """Required configuration (credentials) is missing. Not retried."""


class TransportError(SupportAgentError):
    """The model service stream or connection failed. Recoverable by retrying."""


class DeviceError(SupportAgentError):
    """An audio capture or playback device could not be acquired."""
