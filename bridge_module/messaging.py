"""Chat backend contract, webhook event fan-out, and the Stream Chat client."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

import jwt
import requests

from .config import StreamSettings
from .errors import MessagingError

logger = logging.getLogger(__name__)

MESSAGE_NEW = "message.new"

EventHandler = Callable[[Mapping[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class ChannelRef:
    type: str
    id: str

    @property
    def cid(self) -> str:
        return f"{self.type}:{self.id}"

    @classmethod
    def from_cid(cls, cid: str) -> "ChannelRef":
        channel_type, _, channel_id = cid.partition(":")
        if not channel_type or not channel_id:
            raise ValueError(f"Invalid channel cid '{cid}'")
        return cls(channel_type, channel_id)


@dataclass(frozen=True)
class SentMessage:
    id: str
    cid: str


@dataclass
class InboundMessage:
    id: Optional[str]
    text: str
    ai_generated: bool = False
    attachments: List[Mapping[str, Any]] = field(default_factory=list)

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> Optional["InboundMessage"]:
        message = event.get("message")
        if not isinstance(message, Mapping):
            return None
        return cls(
            id=message.get("id"),
            text=message.get("text") or "",
            ai_generated=bool(message.get("ai_generated")),
            attachments=list(message.get("attachments") or []),
        )


class Indicator(str, Enum):
    THINKING = "AI_STATE_THINKING"
    GENERATING = "AI_STATE_GENERATING"
    EXTERNAL_SOURCES = "AI_STATE_EXTERNAL_SOURCES"
    ERROR = "AI_STATE_ERROR"


def indicator_update(message: SentMessage, state: Indicator) -> Dict[str, Any]:
    return {
        "type": "ai_indicator.update",
        "ai_state": state.value,
        "cid": message.cid,
        "message_id": message.id,
    }


def indicator_clear(message: SentMessage) -> Dict[str, Any]:
    return {"type": "ai_indicator.clear", "cid": message.cid, "message_id": message.id}


class MessagingBackend(Protocol):
    """Operations the bridge needs from the chat service."""

    def subscribe(self, channel: ChannelRef, event_type: str, handler: EventHandler) -> None: ...

    def unsubscribe(self, channel: ChannelRef, event_type: str, handler: EventHandler) -> None: ...

    def send_message(self, channel: ChannelRef, text: str, *, ai_generated: bool = False) -> SentMessage: ...

    def partial_update(self, message_id: str, text: str) -> None: ...

    def send_event(self, channel: ChannelRef, event: Mapping[str, Any]) -> None: ...

    def watch(self, channel: ChannelRef) -> None: ...

    def add_members(self, channel: ChannelRef, user_ids: List[str]) -> None: ...

    def connect_user(self, user_id: str, token: str) -> None: ...

    def disconnect_user(self) -> None: ...

    def create_token(self, user_id: str) -> str: ...


class EventHub:
    """Routes webhook events to handlers subscribed per (channel, event type).

    Handlers run as background tasks so the webhook request can return
    immediately; :meth:`drain` waits for the ones still running.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[str, str], List[EventHandler]] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()

    def subscribe(self, cid: str, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault((cid, event_type), [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, cid: str, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get((cid, event_type))
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[(cid, event_type)]

    def handler_count(self, cid: str, event_type: str) -> int:
        return len(self._handlers.get((cid, event_type), []))

    async def dispatch(self, event: Mapping[str, Any]) -> int:
        """Schedule every matching handler; return how many were scheduled."""
        cid = event_cid(event)
        event_type = event.get("type")
        if not cid or not event_type:
            logger.debug("Ignoring event without cid/type: %s", event_type)
            return 0
        handlers = list(self._handlers.get((cid, event_type), []))
        for handler in handlers:
            task = asyncio.ensure_future(handler(event))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
        return len(handlers)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Event handler failed", exc_info=task.exception())


def event_cid(event: Mapping[str, Any]) -> Optional[str]:
    cid = event.get("cid")
    if cid:
        return cid
    channel_type, channel_id = event.get("channel_type"), event.get("channel_id")
    if channel_type and channel_id:
        return f"{channel_type}:{channel_id}"
    return None


def verify_signature(body: bytes, signature: Optional[str], api_secret: str) -> bool:
    """Check Stream's ``X-Signature`` header (hex HMAC-SHA256 of the body)."""
    if not signature:
        return False
    expected = hmac.new(api_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class StreamChatBackend:
    """Server-side Stream Chat client acting as a single bot user.

    Outbound calls go to the REST API; inbound events arrive as webhooks
    and reach subscribers through the shared :class:`EventHub`.
    """

    def __init__(
        self,
        settings: StreamSettings,
        hub: EventHub,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.hub = hub
        self._session = session or requests.Session()
        self.user_id: Optional[str] = None
        self._user_token: Optional[str] = None
        self._server_token = jwt.encode({"server": True}, settings.api_secret, algorithm="HS256")

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe(self, channel: ChannelRef, event_type: str, handler: EventHandler) -> None:
        self.hub.subscribe(channel.cid, event_type, handler)

    def unsubscribe(self, channel: ChannelRef, event_type: str, handler: EventHandler) -> None:
        self.hub.unsubscribe(channel.cid, event_type, handler)

    # ------------------------------------------------------------------
    # Users

    def create_token(self, user_id: str) -> str:
        return jwt.encode({"user_id": user_id}, self.settings.api_secret, algorithm="HS256")

    def connect_user(self, user_id: str, token: str) -> None:
        self._request("POST", "users", {"users": {user_id: {"id": user_id, "name": "AI Bot"}}})
        self.user_id = user_id
        self._user_token = token
        logger.info("Connected chat user %s", user_id)

    def disconnect_user(self) -> None:
        if self.user_id is None:
            return
        logger.info("Disconnecting chat user %s", self.user_id)
        self.user_id = None
        self._user_token = None
        self._session.close()

    # ------------------------------------------------------------------
    # Channels and messages

    def watch(self, channel: ChannelRef) -> None:
        self._request(
            "POST",
            f"{_channel_path(channel)}/query",
            {"state": True, "data": {"created_by_id": self._require_user()}},
        )

    def add_members(self, channel: ChannelRef, user_ids: List[str]) -> None:
        self._request("POST", _channel_path(channel), {"add_members": list(user_ids)})

    def send_message(self, channel: ChannelRef, text: str, *, ai_generated: bool = False) -> SentMessage:
        message = {"text": text, "ai_generated": ai_generated, "user_id": self._require_user()}
        data = self._request("POST", f"{_channel_path(channel)}/message", {"message": message})
        sent = data.get("message") or {}
        if not sent.get("id"):
            raise MessagingError(f"Stream returned no message id for {channel.cid}")
        return SentMessage(id=sent["id"], cid=sent.get("cid") or channel.cid)

    def partial_update(self, message_id: str, text: str) -> None:
        self._request(
            "PUT",
            f"messages/{message_id}",
            {"set": {"text": text}, "user_id": self._require_user()},
        )

    def send_event(self, channel: ChannelRef, event: Mapping[str, Any]) -> None:
        payload = dict(event)
        payload["user"] = {"id": self._require_user()}
        self._request("POST", f"{_channel_path(channel)}/event", {"event": payload})

    # ------------------------------------------------------------------
    # Transport

    def _require_user(self) -> str:
        if self.user_id is None:
            raise MessagingError("No chat user connected")
        return self.user_id

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.settings.base_url}/{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                params={"api_key": self.settings.api_key},
                json=payload,
                headers={
                    "Authorization": self._server_token,
                    "stream-auth-type": "jwt",
                },
                timeout=self.settings.request_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise MessagingError(f"{method} {path} failed: {exc}") from exc
        try:
            return response.json() or {}
        except ValueError:
            return {}


def _channel_path(channel: ChannelRef) -> str:
    return f"channels/{channel.type}/{channel.id}"
