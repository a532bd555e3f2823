"""Configuration objects for the agent bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_API_NAME = "/chat"
DEFAULT_STREAM_BASE_URL = "https://chat.stream-io-api.com"


@dataclass(frozen=True)
class InferenceConfig:
    """Remote Gradio endpoint connection details."""

    base_url: Optional[str] = None
    api_name: str = DEFAULT_API_NAME
    message_param: str = "message"
    timeout_seconds: float = 45.0


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime controls for agents and the idle sweep."""

    inference: InferenceConfig = field(default_factory=InferenceConfig)
    inactivity_threshold_seconds: float = 300.0
    sweep_interval_seconds: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        """Build a config from environment variables.

        ``GRADIO_BASE_URL`` may be absent here; agents refuse to start
        without it, which surfaces the problem per start request instead
        of at import time.
        """
        env = os.environ if environ is None else environ
        api_name = (
            _clean(env.get("GRADIO_API_NAME"))
            or _clean(env.get("GRADIO_PREDICT_PATH"))
            or DEFAULT_API_NAME
        )
        inference = InferenceConfig(
            base_url=_clean(env.get("GRADIO_BASE_URL")),
            api_name=api_name,
            message_param=_clean(env.get("GRADIO_MESSAGE_PARAM")) or "message",
            timeout_seconds=_positive(env, "GRADIO_TIMEOUT_SECONDS", 45.0),
        )
        return cls(
            inference=inference,
            inactivity_threshold_seconds=_positive(env, "AGENT_INACTIVITY_SECONDS", 300.0),
            sweep_interval_seconds=_positive(env, "AGENT_SWEEP_INTERVAL_SECONDS", 5.0),
        )

    def with_overrides(
        self,
        *,
        base_url: Optional[str] = None,
        api_name: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        inactivity_threshold_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
    ) -> "BridgeConfig":
        """Return a copy with any non-None values replaced."""
        inference = replace(
            self.inference,
            base_url=base_url or self.inference.base_url,
            api_name=api_name or self.inference.api_name,
            timeout_seconds=timeout_seconds or self.inference.timeout_seconds,
        )
        return replace(
            self,
            inference=inference,
            inactivity_threshold_seconds=inactivity_threshold_seconds or self.inactivity_threshold_seconds,
            sweep_interval_seconds=sweep_interval_seconds or self.sweep_interval_seconds,
        )


@dataclass(frozen=True)
class StreamSettings:
    """Credentials for the Stream Chat REST API."""

    api_key: str
    api_secret: str
    base_url: str = DEFAULT_STREAM_BASE_URL
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StreamSettings":
        env = os.environ if environ is None else environ
        api_key = _clean(env.get("STREAM_API_KEY"))
        api_secret = _clean(env.get("STREAM_API_SECRET"))
        if not api_key or not api_secret:
            raise ConfigError("STREAM_API_KEY and STREAM_API_SECRET must be set")
        return cls(
            api_key=api_key,
            api_secret=api_secret,
            base_url=(_clean(env.get("STREAM_BASE_URL")) or DEFAULT_STREAM_BASE_URL).rstrip("/"),
            request_timeout=_positive(env, "STREAM_TIMEOUT_SECONDS", 10.0),
        )


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _positive(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _clean(env.get(name))
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value
