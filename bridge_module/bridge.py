"""Per-channel agent relaying chat messages to the inference endpoint."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Set

from .attachments import FileResolver, default_file_resolver, resolve_files
from .config import BridgeConfig
from .errors import BridgeError, CallError
from .history import ConversationHistory
from .inference_client import InferenceClient
from .messaging import (
    MESSAGE_NEW,
    ChannelRef,
    InboundMessage,
    Indicator,
    MessagingBackend,
    SentMessage,
    indicator_clear,
    indicator_update,
)
from .results import HistoryUpdate, normalize_result

logger = logging.getLogger(__name__)


class BridgeState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


class MessageBridge:
    """One AI agent bound to one channel.

    Every inbound user message gets its own placeholder reply that is later
    overwritten with the model output or an error. Placeholders go out as
    soon as a message arrives, but calls to the endpoint run one at a time
    so the conversation history is updated in order.
    """

    def __init__(
        self,
        channel: ChannelRef,
        backend: MessagingBackend,
        client: InferenceClient,
        config: BridgeConfig,
        *,
        user_id: str,
        file_resolver: FileResolver = default_file_resolver,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.backend = backend
        self.client = client
        self.config = config
        self.user_id = user_id
        self.history = ConversationHistory()
        self._file_resolver = file_resolver
        self._clock = clock
        self.last_interaction = clock()
        self._call_lock = asyncio.Lock()
        self._pending = 0
        self._session_open = False
        self._subscribed = False
        self._disposed = False
        self._stopping = asyncio.Event()
        self._exchanges: Set[asyncio.Task] = set()

    @property
    def state(self) -> BridgeState:
        return BridgeState.PENDING if self._pending else BridgeState.IDLE

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # Lifecycle

    async def init(self) -> None:
        """Open the endpoint connection, join the channel, and start listening."""
        if self._disposed:
            raise RuntimeError(f"Agent for {self.channel.cid} was already disposed")
        await self.client.connect()

        token = self.backend.create_token(self.user_id)
        await asyncio.to_thread(self.backend.connect_user, self.user_id, token)
        self._session_open = True
        await asyncio.to_thread(self.backend.add_members, self.channel, [self.user_id])
        await asyncio.to_thread(self.backend.watch, self.channel)

        self.backend.subscribe(self.channel, MESSAGE_NEW, self.handle_event)
        self._subscribed = True
        logger.info("Agent %s listening on %s", self.user_id, self.channel.cid)

    async def dispose(self) -> None:
        """Release everything this agent holds. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True
        self._stopping.set()
        if self._subscribed:
            self._subscribed = False
            try:
                self.backend.unsubscribe(self.channel, MESSAGE_NEW, self.handle_event)
            except Exception:
                logger.debug("Ignoring unsubscribe failure for %s", self.channel.cid, exc_info=True)
        # Pending exchanges write their error text while the chat user is
        # still connected.
        pending = self._exchanges - {asyncio.current_task()}
        if pending:
            logger.info("Resolving %d pending exchange(s) for %s", len(pending), self.channel.cid)
            await asyncio.wait(pending)
        await self.client.close()
        if self._session_open:
            self._session_open = False
            try:
                await asyncio.to_thread(self.backend.disconnect_user)
            except Exception:
                logger.debug("Ignoring disconnect failure for %s", self.user_id, exc_info=True)
        logger.info("Agent %s disposed", self.user_id)

    # ------------------------------------------------------------------
    # Message handling

    async def handle_event(self, event: Mapping[str, Any]) -> None:
        message = InboundMessage.from_event(event)
        # Our own placeholders come back through the same subscription.
        if message is None or message.ai_generated:
            return
        if self._disposed:
            return
        self.last_interaction = self._clock()

        task = asyncio.current_task()
        self._exchanges.add(task)
        try:
            try:
                placeholder = await asyncio.to_thread(
                    self.backend.send_message, self.channel, "", ai_generated=True
                )
            except Exception:
                logger.exception("Could not create placeholder message in %s", self.channel.cid)
                return
            await self._run_exchange(message, placeholder)
        finally:
            self._exchanges.discard(task)

    async def _run_exchange(self, message: InboundMessage, placeholder: SentMessage) -> None:
        self._pending += 1
        try:
            await self._send_event(indicator_update(placeholder, Indicator.THINKING))
            try:
                text = await self._exchange(message)
            except BridgeError as exc:
                logger.warning("Exchange for message %s in %s failed: %s", message.id, self.channel.cid, exc)
                text = await self._fail(placeholder, exc)
            except Exception as exc:
                logger.exception("Unexpected error handling message %s in %s", message.id, self.channel.cid)
                text = await self._fail(placeholder, exc)
            await self._update_text(placeholder, text)
        finally:
            await self._send_event(indicator_clear(placeholder))
            self._pending -= 1

    async def _exchange(self, message: InboundMessage) -> str:
        async with self._call_lock:
            if self._disposed:
                raise CallError(f"Agent for {self.channel.cid} was stopped")
            files = resolve_files(message.attachments, self._file_resolver)
            payload = {"text": message.text, "files": files}
            raw = await self._predict_until_stopped(payload)
            result = normalize_result(raw)
            if isinstance(result, HistoryUpdate):
                self.history.replace_all(result.turns)
            else:
                self.history.append((message.text, result.reply))
            return result.reply or ""

    async def _predict_until_stopped(self, payload: Mapping[str, Any]) -> Any:
        call = asyncio.ensure_future(self.client.predict(payload, self.history.to_wire()))
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            done, _ = await asyncio.wait({call, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not call.done():
                call.cancel()
        if call in done:
            return call.result()
        raise CallError(f"Agent for {self.channel.cid} was stopped before the endpoint replied")

    async def _fail(self, placeholder: SentMessage, exc: Exception) -> str:
        await self._send_event(indicator_update(placeholder, Indicator.ERROR))
        return self.failure_text(exc)

    def failure_text(self, exc: Optional[Exception]) -> str:
        inference = self.config.inference
        hint = f"Inference call failed (base_url={inference.base_url}, api_name={inference.api_name})"
        cause = str(exc) if exc is not None else ""
        return f"{cause or 'Error generating the message'} - {hint}"

    async def _send_event(self, event: Mapping[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.backend.send_event, self.channel, event)
        except Exception:
            logger.exception("Could not send %s to %s", event.get("type"), self.channel.cid)

    async def _update_text(self, placeholder: SentMessage, text: str) -> None:
        try:
            await asyncio.to_thread(self.backend.partial_update, placeholder.id, text)
        except Exception:
            logger.exception("Could not update message %s in %s", placeholder.id, self.channel.cid)
