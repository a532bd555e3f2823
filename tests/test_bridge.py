import asyncio
import threading
import time

from bridge_module.bridge import BridgeState, MessageBridge
from bridge_module.config import BridgeConfig, InferenceConfig
from bridge_module.errors import CallError, ConfigError
from bridge_module.inference_client import InferenceClient
from bridge_module.messaging import ChannelRef

from conftest import BASE_URL, FakeBackend, FakeInferenceClient, message_event

CHANNEL = ChannelRef("messaging", "general")
THINKING = ("ai_indicator.update", "AI_STATE_THINKING")
ERROR = ("ai_indicator.update", "AI_STATE_ERROR")
CLEAR = ("ai_indicator.clear", None)


def _bridge(backend, client, config, **kwargs):
    kwargs.setdefault("file_resolver", lambda url: {"path": url})
    return MessageBridge(CHANNEL, backend, client, config, user_id="ai-bot-general", **kwargs)


def _run(config, results, events, *, backend=None, **kwargs):
    backend = backend or FakeBackend()
    client = FakeInferenceClient(config.inference, results)

    async def scenario():
        bridge = _bridge(backend, client, config, **kwargs)
        await bridge.init()
        for event in events:
            await bridge.handle_event(event)
        return bridge

    bridge = asyncio.run(scenario())
    return bridge, backend, client


def test_machine_generated_messages_are_ignored(bridge_config):
    events = [message_event("loop", ai_generated=True), {"type": "message.new", "cid": CHANNEL.cid}]
    bridge, backend, client = _run(bridge_config, ["never"], events)

    assert backend.messages == {}
    assert backend.events == []
    assert client.calls == []
    assert len(bridge.history) == 0


def test_successful_exchange_writes_reply_into_placeholder(bridge_config):
    bridge, backend, client = _run(bridge_config, ["hi there"], [message_event("hello")])

    assert list(backend.messages) == ["msg-1"]
    assert backend.messages["msg-1"]["ai_generated"] is True
    assert backend.updates == [("msg-1", "hi there")]
    assert backend.event_kinds() == [THINKING, CLEAR]
    assert all(event["message_id"] == "msg-1" for event in backend.events)
    assert client.calls[0][0] == {"text": "hello", "files": []}
    assert bridge.history.snapshot() == (("hello", "hi there"),)
    assert bridge.state is BridgeState.IDLE


def test_remote_history_replaces_local_history(bridge_config):
    remote = [("earlier", "answer"), ("hello", "remote reply")]
    events = [message_event("first"), message_event("hello")]
    bridge, backend, client = _run(bridge_config, ["local reply", ("", [], remote)], events)

    assert bridge.history.snapshot() == tuple(remote)
    assert backend.updates[-1] == ("msg-2", "remote reply")
    # The second call saw the locally accumulated first turn.
    assert client.calls[1][1] == [["first", "local reply"]]


def test_empty_reply_still_resolves_placeholder(bridge_config):
    bridge, backend, _ = _run(bridge_config, [{"data": ["", None]}], [message_event("hello")])

    assert backend.updates == [("msg-1", "")]
    assert backend.event_kinds() == [THINKING, CLEAR]


def test_failed_call_shows_diagnostic_and_clears_indicator(bridge_config):
    bridge, backend, _ = _run(bridge_config, [CallError("endpoint exploded")], [message_event("hello")])

    assert backend.event_kinds() == [THINKING, ERROR, CLEAR]
    message_id, text = backend.updates[0]
    assert message_id == "msg-1"
    assert "endpoint exploded" in text
    assert f"base_url={BASE_URL}" in text
    assert "api_name=/chat" in text
    assert len(bridge.history) == 0


def test_unexpected_errors_are_contained(bridge_config):
    bridge, backend, _ = _run(bridge_config, [RuntimeError("bug")], [message_event("hello")])

    assert backend.event_kinds() == [THINKING, ERROR, CLEAR]
    assert backend.updates[0][1].startswith("bug - ")


def test_later_exchanges_work_after_a_failure(bridge_config):
    events = [message_event("one"), message_event("two")]
    bridge, backend, _ = _run(bridge_config, [CallError("boom"), "recovered"], events)

    assert backend.updates[0][0] == "msg-1"
    assert "boom" in backend.updates[0][1]
    assert backend.updates[1] == ("msg-2", "recovered")
    assert bridge.history.snapshot() == (("two", "recovered"),)


def test_image_attachments_are_sent_as_files(bridge_config):
    attachments = [
        {"type": "image", "image_url": "u1"},
        {"type": "file", "asset_url": "doc.pdf"},
        {"type": "image", "thumb_url": "u2"},
    ]
    _, _, client = _run(bridge_config, ["seen"], [message_event("look", attachments=attachments)])

    assert client.calls[0][0] == {"text": "look", "files": [{"path": "u1"}, {"path": "u2"}]}


def test_attachment_failure_is_reported_like_a_call_failure(bridge_config):
    def broken(url):
        raise OSError("forbidden")

    attachments = [{"type": "image", "image_url": "https://cdn.example/x.png"}]
    _, backend, client = _run(
        bridge_config, ["unused"], [message_event("look", attachments=attachments)], file_resolver=broken
    )

    assert client.calls == []
    assert backend.event_kinds() == [THINKING, ERROR, CLEAR]
    assert "https://cdn.example/x.png" in backend.updates[0][1]


def test_placeholder_failure_skips_the_exchange(bridge_config):
    backend = FakeBackend(fail_on={"send_message"})
    bridge, _, client = _run(bridge_config, ["unused"], [message_event("hello")], backend=backend)

    assert client.calls == []
    assert backend.events == []


def test_write_back_failure_still_clears_indicator(bridge_config):
    backend = FakeBackend(fail_on={"partial_update"})
    _, _, client = _run(bridge_config, ["reply"], [message_event("hello")], backend=backend)

    assert len(client.calls) == 1
    assert backend.event_kinds() == [THINKING, CLEAR]


def test_last_interaction_tracks_user_messages(bridge_config, clock):
    backend = FakeBackend()
    client = FakeInferenceClient(bridge_config.inference, ["a"])

    async def scenario():
        bridge = _bridge(backend, client, bridge_config, clock=clock)
        await bridge.init()
        created = bridge.last_interaction
        clock.advance(30)
        await bridge.handle_event(message_event("bot", ai_generated=True))
        after_bot = bridge.last_interaction
        clock.advance(30)
        await bridge.handle_event(message_event("user"))
        return created, after_bot, bridge.last_interaction

    created, after_bot, after_user = asyncio.run(scenario())
    assert created == after_bot == 1000.0
    assert after_user == 1060.0


def test_concurrent_messages_get_own_placeholders_and_serialized_calls(bridge_config):
    backend = FakeBackend()
    client = FakeInferenceClient(bridge_config.inference, ["first", "second"], delay=0.05)

    async def scenario():
        bridge = _bridge(backend, client, bridge_config)
        await bridge.init()
        await asyncio.gather(
            bridge.handle_event(message_event("one", message_id="u1")),
            bridge.handle_event(message_event("two", message_id="u2")),
        )
        return bridge

    bridge = asyncio.run(scenario())
    assert len(backend.messages) == 2
    assert client.max_active == 1
    assert sorted(text for _, text in backend.updates) == ["first", "second"]
    for message_id, text in backend.updates:
        assert backend.messages[message_id]["text"] == text
    assert [kind for kind in backend.event_kinds() if kind == CLEAR] == [CLEAR, CLEAR]
    assert len(bridge.history) == 2


def test_timeout_resolves_placeholder_with_endpoint_in_error():
    release = threading.Event()

    class Hanging:
        def predict(self, *args, **kwargs):
            release.wait(5)
            return "too late"

        def close(self):
            pass

    config = BridgeConfig(inference=InferenceConfig(base_url=BASE_URL, timeout_seconds=0.1))
    backend = FakeBackend()

    async def scenario():
        client = InferenceClient(config.inference, client_factory=lambda url: Hanging())
        bridge = _bridge(backend, client, config)
        await bridge.init()
        started = time.monotonic()
        try:
            await bridge.handle_event(message_event("hello"))
            return time.monotonic() - started
        finally:
            release.set()

    elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    assert backend.event_kinds() == [THINKING, ERROR, CLEAR]
    text = backend.updates[0][1]
    assert "timed out" in text
    assert BASE_URL in text


def test_init_subscribes_once_and_dispose_is_idempotent(bridge_config):
    backend = FakeBackend()
    client = FakeInferenceClient(bridge_config.inference)

    async def scenario():
        bridge = _bridge(backend, client, bridge_config)
        await bridge.init()
        count_after_init = backend.hub.handler_count(CHANNEL.cid, "message.new")
        await bridge.dispose()
        await bridge.dispose()
        return bridge, count_after_init

    bridge, count_after_init = asyncio.run(scenario())
    assert count_after_init == 1
    assert backend.hub.handler_count(CHANNEL.cid, "message.new") == 0
    assert backend.watched == [CHANNEL.cid]
    assert backend.members == [(CHANNEL.cid, ["ai-bot-general"])]
    assert backend.disconnects == 1
    assert client.closed == 1
    assert bridge.disposed


def test_dispose_after_failed_init_is_safe(bridge_config):
    backend = FakeBackend()
    client = FakeInferenceClient(bridge_config.inference, connect_error=ConfigError("GRADIO_BASE_URL is required"))

    async def scenario():
        bridge = _bridge(backend, client, bridge_config)
        try:
            await bridge.init()
        except ConfigError:
            pass
        await bridge.dispose()

    asyncio.run(scenario())
    assert backend.disconnects == 0
    assert backend.hub.handler_count(CHANNEL.cid, "message.new") == 0


def test_disposal_errors_are_swallowed(bridge_config):
    backend = FakeBackend()
    client = FakeInferenceClient(bridge_config.inference)

    async def scenario():
        bridge = _bridge(backend, client, bridge_config)
        await bridge.init()
        backend.fail_on = {"unsubscribe", "disconnect_user"}
        await bridge.dispose()
        return bridge

    bridge = asyncio.run(scenario())
    assert bridge.disposed
    assert client.closed == 1


def test_dispose_resolves_pending_exchanges_before_disconnecting():
    release = threading.Event()
    opened = []
    closed = []

    class Hanging:
        def predict(self, *args, **kwargs):
            release.wait(5)
            return "too late"

        def close(self):
            closed.append(self)

    def factory(url):
        connection = Hanging()
        opened.append(connection)
        return connection

    config = BridgeConfig(inference=InferenceConfig(base_url=BASE_URL, timeout_seconds=5.0))
    backend = FakeBackend(require_user=True)
    client = InferenceClient(config.inference, client_factory=factory)

    async def scenario():
        bridge = _bridge(backend, client, config)
        await bridge.init()
        try:
            first = asyncio.create_task(bridge.handle_event(message_event("one", message_id="u1")))
            second = asyncio.create_task(bridge.handle_event(message_event("two", message_id="u2")))
            await asyncio.sleep(0.2)
            pending_state = bridge.state
            await bridge.dispose()
            await asyncio.gather(first, second)
            return bridge, pending_state
        finally:
            release.set()

    bridge, pending_state = asyncio.run(scenario())
    assert pending_state is BridgeState.PENDING
    assert bridge.state is BridgeState.IDLE
    assert sorted(backend.messages) == ["msg-1", "msg-2"]
    for message in backend.messages.values():
        assert "was stopped" in message["text"]
    kinds = backend.event_kinds()
    assert kinds.count(THINKING) == 2
    assert kinds.count(ERROR) == 2
    assert kinds.count(CLEAR) == 2
    assert backend.disconnects == 1
    assert client.connected is False
    assert len(opened) == 1
    assert closed == opened
    assert len(bridge.history) == 0


def test_events_after_dispose_are_ignored(bridge_config):
    backend = FakeBackend(require_user=True)
    client = FakeInferenceClient(bridge_config.inference, ["unused"])

    async def scenario():
        bridge = _bridge(backend, client, bridge_config)
        await bridge.init()
        await bridge.dispose()
        await bridge.handle_event(message_event("late"))

    asyncio.run(scenario())
    assert backend.messages == {}
    assert client.calls == []
