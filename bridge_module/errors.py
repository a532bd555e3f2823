"""Exception hierarchy for the agent bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for agent bridge failures."""


class ConfigError(BridgeError):
    """Required configuration is missing or invalid."""


class EndpointConnectionError(BridgeError, ConnectionError):
    """The inference endpoint could not be reached at connect time."""


class CallError(BridgeError):
    """A single inference call failed, was rejected, or timed out."""


class AttachmentResolutionError(BridgeError):
    """An attachment URL could not be turned into a file handle."""


class AlreadyRunningError(BridgeError):
    """An agent is already running (or starting) for the channel."""


class MessagingError(BridgeError):
    """The chat backend rejected or failed a request."""
