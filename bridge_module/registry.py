"""Agent registry: one bridge per channel, reaped after inactivity."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from .attachments import FileResolver, default_file_resolver
from .bridge import MessageBridge
from .config import BridgeConfig, InferenceConfig
from .errors import AlreadyRunningError
from .inference_client import InferenceClient
from .messaging import ChannelRef, MessagingBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentStatus:
    cid: str
    running: bool
    user_id: Optional[str] = None
    last_interaction: Optional[float] = None
    idle_seconds: Optional[float] = None


def bot_user_id(channel: ChannelRef) -> str:
    return f"ai-bot-{channel.id.replace('!', '')}"


class AgentRegistry:
    """Creates, tracks and disposes :class:`MessageBridge` instances."""

    def __init__(
        self,
        config: BridgeConfig,
        backend_factory: Callable[[], MessagingBackend],
        *,
        client_factory: Optional[Callable[[InferenceConfig], InferenceClient]] = None,
        file_resolver: FileResolver = default_file_resolver,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._backend_factory = backend_factory
        self._client_factory = client_factory or InferenceClient
        self._file_resolver = file_resolver
        self._clock = clock
        self._agents: Dict[str, MessageBridge] = {}
        self._starting: Set[str] = set()
        self._sweeper: Optional["asyncio.Task[None]"] = None

    def get(self, channel: ChannelRef) -> Optional[MessageBridge]:
        return self._agents.get(channel.cid)

    def __len__(self) -> int:
        return len(self._agents)

    async def start(self, channel: ChannelRef) -> MessageBridge:
        """Create and initialise the agent for ``channel``.

        Raises :class:`AlreadyRunningError` if one exists or is being
        started; initialisation errors propagate after the partial agent is
        disposed.
        """
        cid = channel.cid
        if cid in self._agents or cid in self._starting:
            raise AlreadyRunningError(f"An agent is already running for {cid}")
        self._starting.add(cid)
        agent: Optional[MessageBridge] = None
        try:
            agent = MessageBridge(
                channel,
                self._backend_factory(),
                self._client_factory(self.config.inference),
                self.config,
                user_id=bot_user_id(channel),
                file_resolver=self._file_resolver,
                clock=self._clock,
            )
            await agent.init()
        except Exception:
            logger.warning("Failed to start agent for %s", cid)
            if agent is not None:
                await agent.dispose()
            raise
        finally:
            self._starting.discard(cid)
        self._agents[cid] = agent
        logger.info("Started agent for %s (%d running)", cid, len(self._agents))
        return agent

    async def stop(self, channel: ChannelRef) -> bool:
        """Dispose the agent for ``channel``; False if none was running."""
        agent = self._agents.pop(channel.cid, None)
        if agent is None:
            return False
        await agent.dispose()
        logger.info("Stopped agent for %s (%d running)", channel.cid, len(self._agents))
        return True

    def status(self, channel: ChannelRef) -> AgentStatus:
        agent = self._agents.get(channel.cid)
        if agent is None:
            return AgentStatus(cid=channel.cid, running=False)
        return AgentStatus(
            cid=channel.cid,
            running=True,
            user_id=agent.user_id,
            last_interaction=agent.last_interaction,
            idle_seconds=max(0.0, self._clock() - agent.last_interaction),
        )

    def list_agents(self) -> List[AgentStatus]:
        return [self.status(agent.channel) for agent in list(self._agents.values())]

    # ------------------------------------------------------------------
    # Idle sweep

    async def sweep(self) -> List[str]:
        """Stop every agent idle for longer than the inactivity threshold."""
        now = self._clock()
        threshold = self.config.inactivity_threshold_seconds
        expired = [
            agent.channel
            for agent in list(self._agents.values())
            if now - agent.last_interaction > threshold
        ]
        for channel in expired:
            logger.info("Disposing agent for %s after %.0f seconds of inactivity", channel.cid, threshold)
            await self.stop(channel)
        return [channel.cid for channel in expired]

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Cancel the sweeper and dispose every agent."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for agent in list(self._agents.values()):
            await self.stop(agent.channel)

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_seconds
        logger.info("Agent sweep running every %.0f seconds", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Agent sweep failed")
