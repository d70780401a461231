"""
server.py — Voice Conversation Engine · HTTP + Live Gateway
===========================================================
Two listeners in one process, both owned by the FastAPI lifespan:

  HTTP (FastAPI, PORT)        request/response surface
  WebSocket (websockets,      live voice sessions, one VoiceSession per
             WS_PORT)         connection

Endpoints
---------
  GET  /health        Engine / ffmpeg readiness and session count
  POST /api/voice     Upload one audio file → one synthesized reply
  GET  /sessions      Snapshot of live sessions
  GET  /config        Current runtime config
  PUT  /config        Deep-merge patch (applies to sessions opened afterwards;
                      session.max_message_bytes is bound when the gateway
                      starts and needs a restart)

Concurrency model
-----------------
Single asyncio event loop.  Sessions share nothing but the SessionRegistry
owned by the Runtime; each session runs at most one pipeline at a time.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
from websockets.asyncio.server import Server, ServerConnection, serve

from config import VoiceEngineConfig
from conversation import Conversation
from engines import GroqSpeechEngines, SpeechEngines
from messages import NO_AUDIO_ERROR, ErrorKind
from pipeline import Transcoder, VoicePipeline
from registry import SessionRegistry
from session import VoiceSession, WebSocketChannel
from transcoder import FfmpegTranscoder

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_engine.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = Path(os.getenv("VOICE_CONFIG_PATH", "voice_config.json"))
HOST        = os.getenv("HOST", "0.0.0.0")
HTTP_PORT   = int(os.getenv("PORT", "5000"))
WS_PORT     = int(os.getenv("WS_PORT", "8080"))


# ---------------------------------------------------------------------------
# Runtime — current config, engines and the session registry
# ---------------------------------------------------------------------------

EnginesFactory = Callable[[VoiceEngineConfig], SpeechEngines]
TranscoderFactory = Callable[[VoiceEngineConfig], Transcoder]


class Runtime:
    """Everything sessions and endpoints share.  Rebuilt on config patch."""

    def __init__(
        self,
        config: VoiceEngineConfig,
        config_path: Optional[Path] = None,
        engines_factory: EnginesFactory = GroqSpeechEngines,
        transcoder_factory: TranscoderFactory = lambda cfg: FfmpegTranscoder(cfg.transcoder),
    ) -> None:
        self.config_path = config_path
        self.registry = SessionRegistry()
        self._engines_factory = engines_factory
        self._transcoder_factory = transcoder_factory
        self._apply(config)

    def _apply(self, config: VoiceEngineConfig) -> None:
        self.config = config
        self.engines = self._engines_factory(config)
        self.transcoder = self._transcoder_factory(config)

    def update(self, patch: dict) -> VoiceEngineConfig:
        config = self.config.merge_patch(patch)
        if self.config_path is not None:
            config.save(self.config_path)
        if config.session.max_message_bytes != self.config.session.max_message_bytes:
            log.warning(
                "event=restart_required key=session.max_message_bytes value=%d",
                config.session.max_message_bytes,
            )
        self._apply(config)
        return config

    def new_pipeline(self) -> VoicePipeline:
        return VoicePipeline(self.engines, self.transcoder, self.config)

    @property
    def engines_configured(self) -> bool:
        return bool(getattr(self.engines, "configured", True))

    @property
    def ffmpeg_available(self) -> bool:
        return bool(getattr(self.transcoder, "available", True))


# ---------------------------------------------------------------------------
# Live gateway
# ---------------------------------------------------------------------------

class VoiceGateway:
    """websockets server that hands each connection to a VoiceSession."""

    def __init__(self, runtime: Runtime, host: str = HOST, port: int = WS_PORT) -> None:
        self._runtime = runtime
        self._host = host
        self._port = port
        self._server: Optional[Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started with port 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def handler(self, ws: ServerConnection) -> None:
        runtime = self._runtime
        session = VoiceSession(
            WebSocketChannel(ws),
            runtime.new_pipeline(),
            runtime.registry,
            runtime.config,
        )
        await session.run()

    async def start(self) -> None:
        self._server = await serve(
            self.handler,
            self._host,
            self._port,
            ping_interval=None,   # sessions run their own keep-alive
            max_size=self._runtime.config.session.max_message_bytes,
        )
        log.info("event=gateway_start host=%s port=%d", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        log.info("event=gateway_shutdown active_sessions=%d", len(self._runtime.registry))
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("event=gateway_stopped")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status:           str
    timestamp:        str
    groq_configured:  bool
    ffmpeg_available: bool
    active_sessions:  int


class SessionInfoModel(BaseModel):
    session_id: str
    remote:     str
    state:      str
    turns:      int
    uptime_sec: float


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(runtime: Optional[Runtime] = None, start_gateway: bool = True) -> FastAPI:
    runtime = runtime or Runtime(VoiceEngineConfig.load(CONFIG_PATH), CONFIG_PATH)
    gateway = VoiceGateway(runtime)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start http_port=%d ws_port=%d", HTTP_PORT, WS_PORT)
        if start_gateway:
            await gateway.start()
        yield
        await gateway.stop()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Conversation Engine",
        version="1.0.0",
        description="Speech-to-speech conversation over WebSocket and HTTP upload",
        lifespan=_lifespan,
    )
    app.state.runtime = runtime
    app.state.gateway = gateway

    # Browser client is served from another origin during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Readiness of the downstream engines; the core does not depend on it."""
        return HealthResponse(
            status="OK",
            timestamp=datetime.now(timezone.utc).isoformat(),
            groq_configured=runtime.engines_configured,
            ffmpeg_available=runtime.ffmpeg_available,
            active_sessions=len(runtime.registry),
        )

    @app.post("/api/voice")
    async def voice(audio: Optional[UploadFile] = File(None)) -> Response:
        """
        Single-file variant: transcode → transcribe → complete → synthesize.

        Each request is its own conversation (system turn + this utterance).
        Returns the reply audio with the configured media type, or a JSON
        error body:
            400  no_audio_uploaded
            422  empty_transcript
            500  transcode_failed | transcription_failed | completion_failed | synthesis_failed
        """
        data = await audio.read() if audio is not None else b""
        if not data:
            log.warning("event=upload_rejected reason=no_audio")
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": NO_AUDIO_ERROR, "code": ErrorKind.NO_AUDIO_UPLOADED.value},
            )

        log.info("event=upload_received filename=%s bytes=%d", audio.filename, len(data))
        config = runtime.config
        conversation = Conversation(config.system_prompt)
        result = await runtime.new_pipeline().run(data, conversation)

        if result is None:
            return JSONResponse(
                status_code=422,
                content={"error": "No speech detected.", "code": "empty_transcript"},
            )
        if not result.is_ok:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=result.error_payload(),
            )
        return Response(
            content=result.audio,
            media_type=result.media_type,
            headers={"Content-Length": str(len(result.audio or b""))},
        )

    @app.get("/sessions", response_model=list[SessionInfoModel])
    async def list_sessions() -> list[SessionInfoModel]:
        """Returns a snapshot of all live sessions."""
        return [SessionInfoModel(**asdict(info)) for info in runtime.registry.snapshot()]

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(runtime.config.model_dump(mode="json"))

    @app.put("/config")
    async def put_config(request: Request) -> JSONResponse:
        """Deep-merge a partial config, e.g. {"session": {"busy_policy": "drop"}}."""
        try:
            patch: Any = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
        if not isinstance(patch, dict):
            raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")
        try:
            config = runtime.update(patch)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False, include_input=False)) from exc
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(config.model_dump(mode="json"))

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=HOST, port=HTTP_PORT)


if __name__ == "__main__":
    main()
