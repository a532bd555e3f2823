import asyncio
import itertools
import pathlib
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from bridge_module.config import BridgeConfig, InferenceConfig
from bridge_module.errors import MessagingError
from bridge_module.messaging import EventHub, SentMessage

BASE_URL = "https://demo.gradio.live"
USER_OPERATIONS = {"send_message", "partial_update", "send_event", "watch", "add_members"}


class FakeBackend:
    """In-memory stand-in for the Stream Chat backend."""

    def __init__(self, hub: Optional[EventHub] = None, *, fail_on=(), require_user: bool = False):
        self.hub = hub or EventHub()
        self.fail_on = set(fail_on)
        self.require_user = require_user
        self.user_id: Optional[str] = None
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.updates: List[tuple] = []
        self.events: List[Dict[str, Any]] = []
        self.watched: List[str] = []
        self.members: List[tuple] = []
        self.disconnects = 0
        self._ids = itertools.count(1)

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise MessagingError(f"{name} failed")
        if self.require_user and self.user_id is None and name in USER_OPERATIONS:
            raise MessagingError("No chat user connected")

    def subscribe(self, channel, event_type, handler):
        self._check("subscribe")
        self.hub.subscribe(channel.cid, event_type, handler)

    def unsubscribe(self, channel, event_type, handler):
        self._check("unsubscribe")
        self.hub.unsubscribe(channel.cid, event_type, handler)

    def send_message(self, channel, text, *, ai_generated=False):
        self._check("send_message")
        message_id = f"msg-{next(self._ids)}"
        self.messages[message_id] = {"text": text, "ai_generated": ai_generated, "cid": channel.cid}
        return SentMessage(id=message_id, cid=channel.cid)

    def partial_update(self, message_id, text):
        self._check("partial_update")
        self.messages[message_id]["text"] = text
        self.updates.append((message_id, text))

    def send_event(self, channel, event):
        self._check("send_event")
        self.events.append(dict(event))

    def watch(self, channel):
        self._check("watch")
        self.watched.append(channel.cid)

    def add_members(self, channel, user_ids):
        self._check("add_members")
        self.members.append((channel.cid, list(user_ids)))

    def connect_user(self, user_id, token):
        self._check("connect_user")
        self.user_id = user_id

    def disconnect_user(self):
        self._check("disconnect_user")
        self.disconnects += 1
        self.user_id = None

    def create_token(self, user_id):
        return f"token-{user_id}"

    def event_kinds(self):
        return [(event["type"], event.get("ai_state")) for event in self.events]


class FakeInferenceClient:
    """Async double of InferenceClient returning queued results."""

    def __init__(self, config: InferenceConfig, results=None, *, connect_error=None, delay: float = 0.0):
        self.config = config
        self.results = list(results or [])
        self.connect_error = connect_error
        self.delay = delay
        self.calls: List[tuple] = []
        self.connected = False
        self.closed = 0
        self.active = 0
        self.max_active = 0

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return self

    async def predict(self, payload, history):
        self.calls.append((payload, history))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if self.results else ""
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.active -= 1

    async def close(self):
        self.closed += 1
        self.connected = False


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def message_event(text="hello", *, ai_generated=False, attachments=None, cid="messaging:general", message_id="user-1"):
    return {
        "type": "message.new",
        "cid": cid,
        "message": {
            "id": message_id,
            "text": text,
            "ai_generated": ai_generated,
            "attachments": attachments or [],
        },
    }


@pytest.fixture
def bridge_config():
    return BridgeConfig(
        inference=InferenceConfig(base_url=BASE_URL, api_name="/chat", timeout_seconds=1.0),
        inactivity_threshold_seconds=60.0,
        sweep_interval_seconds=0.01,
    )


@pytest.fixture
def clock():
    return FakeClock()
