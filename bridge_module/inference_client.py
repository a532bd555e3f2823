"""Client wrapper for a remote Gradio chat endpoint."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import InferenceConfig
from .errors import CallError, ConfigError, EndpointConnectionError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


def gradio_client_factory(base_url: str) -> Any:
    from gradio_client import Client

    return Client(base_url, verbose=False)


def _keyword_call(connection: Any, config: InferenceConfig, payload: Dict[str, Any], history: List[List[str]]) -> Any:
    return connection.predict(api_name=config.api_name, **{config.message_param: payload})


def _positional_call(connection: Any, config: InferenceConfig, payload: Dict[str, Any], history: List[List[str]]) -> Any:
    return connection.predict(payload, history, api_name=config.api_name)


# Endpoints disagree on whether the chat function takes one named message or
# (message, history) positionally. Each style gets exactly one attempt.
CALL_STRATEGIES: Sequence[Tuple[str, Callable[..., Any]]] = (
    ("keyword", _keyword_call),
    ("positional", _positional_call),
)


class InferenceClient:
    """Owns at most one live connection to the inference endpoint."""

    def __init__(self, config: InferenceConfig, *, client_factory: Optional[ClientFactory] = None) -> None:
        self.config = config
        self._client_factory = client_factory or gradio_client_factory
        self._connection: Optional[Any] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> Any:
        """Open the connection if it is not open yet and return it."""
        if self._connection is not None:
            return self._connection
        if self._closed:
            raise EndpointConnectionError("Inference client is closed")
        base_url = self.config.base_url
        if not base_url:
            raise ConfigError(
                "GRADIO_BASE_URL is required (set it to your Gradio share URL, e.g. https://xxxx.gradio.live)"
            )
        logger.info("Connecting to inference endpoint %s", base_url)
        try:
            self._connection = await asyncio.to_thread(self._client_factory, base_url)
        except Exception as exc:
            raise EndpointConnectionError(f"Could not connect to {base_url}: {exc}") from exc
        return self._connection

    async def predict(self, payload: Dict[str, Any], history: List[List[str]]) -> Any:
        """Run one prediction, bounded by ``timeout_seconds``.

        On timeout the worker thread is abandoned rather than interrupted,
        so the endpoint may still finish the request on its side.
        """
        try:
            connection = await self.connect()
        except EndpointConnectionError as exc:
            raise CallError(str(exc)) from exc

        timeout = self.config.timeout_seconds
        logger.info("Calling %s%s with %d file(s)", self.config.base_url, self.config.api_name, len(payload.get("files", [])))
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._call_with_fallback, connection, payload, history),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            await self._discard(connection)
            raise CallError(f"Inference call timed out after {timeout:g}s") from exc
        except CallError:
            await self._discard(connection)
            raise

    async def close(self) -> None:
        """Close the connection for good; never raises."""
        self._closed = True
        await self._release()

    async def _release(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        await asyncio.to_thread(_close_quietly, connection)

    def _call_with_fallback(self, connection: Any, payload: Dict[str, Any], history: List[List[str]]) -> Any:
        last_error: Optional[Exception] = None
        for name, strategy in CALL_STRATEGIES:
            try:
                return strategy(connection, self.config, payload, history)
            except Exception as exc:
                logger.warning("%s-style call to %s failed: %s", name, self.config.api_name, exc)
                last_error = exc
        raise CallError(f"Inference call to {self.config.api_name} failed: {last_error}") from last_error

    async def _discard(self, connection: Any) -> None:
        # Drop a connection that just failed so the next exchange reconnects.
        if self._connection is connection:
            await self._release()


def _close_quietly(connection: Any) -> None:
    try:
        connection.close()
    except Exception:
        logger.debug("Ignoring error while closing inference connection", exc_info=True)
