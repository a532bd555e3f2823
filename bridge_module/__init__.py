"""Bridge between Stream Chat channels and a remote Gradio chat model.

Each channel gets its own :class:`~bridge_module.bridge.MessageBridge`
agent that listens for new messages, forwards them (with image
attachments) to the model and writes the reply back into the channel.
:class:`~bridge_module.registry.AgentRegistry` owns the agents and
retires idle ones; ``bridge_module.api.create_app`` exposes start, stop
and status over HTTP.
"""

from .api import create_app
from .bridge import MessageBridge
from .config import BridgeConfig, InferenceConfig, StreamSettings
from .registry import AgentRegistry, AgentStatus

__all__ = [
    "AgentRegistry",
    "AgentStatus",
    "BridgeConfig",
    "InferenceConfig",
    "MessageBridge",
    "StreamSettings",
    "create_app",
]
