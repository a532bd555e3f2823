"""FastAPI control surface for starting, stopping and inspecting agents."""

from __future__ import annotations

import argparse
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, validator
import uvicorn

from .config import BridgeConfig, StreamSettings
from .errors import AlreadyRunningError, BridgeError, ConfigError
from .messaging import ChannelRef, EventHub, StreamChatBackend, verify_signature
from .registry import AgentRegistry
from .utils import setup_logging

logger = logging.getLogger(__name__)


class ChannelRequest(BaseModel):
    channel_id: str = Field(..., description="Stream channel id the agent should join.")
    channel_type: str = Field("messaging", description="Stream channel type.")

    @validator("channel_id", "channel_type")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value.strip()

    def ref(self) -> ChannelRef:
        return ChannelRef(self.channel_type, self.channel_id)


class AgentStatusResponse(BaseModel):
    cid: str
    running: bool
    user_id: Optional[str] = None
    last_interaction: Optional[float] = None
    idle_seconds: Optional[float] = None


class StopResponse(BaseModel):
    cid: str
    stopped: bool


def create_app(
    config: Optional[BridgeConfig] = None,
    *,
    registry: Optional[AgentRegistry] = None,
    hub: Optional[EventHub] = None,
    stream_settings: Optional[StreamSettings] = None,
    webhook_secret: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = config or BridgeConfig.from_env()
    hub = hub or EventHub()
    if registry is None:
        settings = stream_settings or StreamSettings.from_env()
        registry = AgentRegistry(config, lambda: StreamChatBackend(settings, hub))
    if webhook_secret is None and stream_settings is not None:
        webhook_secret = stream_settings.api_secret

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.registry.start_sweeper()
        try:
            yield
        finally:
            await app.state.hub.drain()
            await app.state.registry.shutdown()

    app = FastAPI(title="Agent Bridge", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.hub = hub
    app.state.webhook_secret = webhook_secret

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/agents/start", response_model=AgentStatusResponse)
    async def start_agent(request: ChannelRequest):
        channel = request.ref()
        logger.info("Start requested for %s", channel.cid)
        try:
            await app.state.registry.start(channel)
        except AlreadyRunningError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except BridgeError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Agent start failed for %s", channel.cid)
            raise HTTPException(status_code=500, detail="Agent start failed") from exc
        return AgentStatusResponse(**asdict(app.state.registry.status(channel)))

    @app.post("/agents/stop", response_model=StopResponse)
    async def stop_agent(request: ChannelRequest):
        channel = request.ref()
        logger.info("Stop requested for %s", channel.cid)
        stopped = await app.state.registry.stop(channel)
        return StopResponse(cid=channel.cid, stopped=stopped)

    @app.get("/agents/status", response_model=AgentStatusResponse)
    async def agent_status(channel_id: str, channel_type: str = "messaging"):
        if not channel_id.strip() or not channel_type.strip():
            raise HTTPException(status_code=400, detail="channel_id and channel_type must not be empty")
        status = app.state.registry.status(ChannelRef(channel_type.strip(), channel_id.strip()))
        return AgentStatusResponse(**asdict(status))

    @app.get("/agents", response_model=List[AgentStatusResponse])
    async def list_agents():
        return [AgentStatusResponse(**asdict(status)) for status in app.state.registry.list_agents()]

    @app.post("/webhooks/stream")
    async def stream_webhook(request: Request) -> Dict[str, Any]:
        body = await request.body()
        secret = app.state.webhook_secret
        if secret and not verify_signature(body, request.headers.get("X-Signature"), secret):
            raise HTTPException(status_code=401, detail="Invalid signature")
        try:
            event = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Webhook payload must be an object")
        handlers = await app.state.hub.dispatch(event)
        logger.debug("Dispatched %s to %d handler(s)", event.get("type"), handlers)
        return {"status": "accepted", "handlers": handlers}

    return app


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat-to-inference agent bridge.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=3000, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument("--gradio_base_url", help="Gradio app URL (overrides GRADIO_BASE_URL).")
    parser.add_argument("--gradio_api_name", help="Gradio endpoint name (overrides GRADIO_API_NAME).")
    parser.add_argument("--call_timeout", type=float, help="Seconds to wait for one inference call.")
    parser.add_argument("--inactivity_seconds", type=float, help="Idle time before an agent is disposed.")
    parser.add_argument("--sweep_interval", type=float, help="Seconds between idle sweeps.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_dir, logging.INFO)
    try:
        config = BridgeConfig.from_env().with_overrides(
            base_url=args.gradio_base_url,
            api_name=args.gradio_api_name,
            timeout_seconds=args.call_timeout,
            inactivity_threshold_seconds=args.inactivity_seconds,
            sweep_interval_seconds=args.sweep_interval,
        )
        settings = StreamSettings.from_env()
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}")

    app = create_app(config, stream_settings=settings)
    logger.info("Starting agent bridge on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
