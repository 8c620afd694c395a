import asyncio
import os
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from opus_relay.api import health, info, audio
from opus_relay.config.settings import config, CONFIG_PATH
from opus_relay.core.logging import setup_logging
from opus_relay.core.state import state
from opus_relay.infra.redis import init_redis, close_redis
from opus_relay.relay.ffmpeg import FFmpegCommandBuilder
from opus_relay.services.ytdlp import YTDLPCommandBuilder, SubprocessExecutor

app = FastAPI(
    title=config.api.title,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Relay-Mode", "X-Format-Id", "X-Framing", "X-Request-Id"],
)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response

# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(info.router, tags=["Info"])
app.include_router(audio.router, tags=["Audio"])

async def probe_version(cmd) -> str:
    """First output line of a version command, or 'unknown'"""
    try:
        result = await SubprocessExecutor.run(cmd, timeout=10)
    except (OSError, asyncio.TimeoutError):
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    lines = result.stdout.decode("utf-8", errors="replace").strip().splitlines()
    return lines[0] if lines else "unknown"

@app.on_event("startup")
async def startup_event():
    setup_logging()

    # Ensure config directory exists and file is created if missing
    config_dir = os.path.dirname(CONFIG_PATH)
    if config_dir and not os.path.exists(config_dir):
        os.makedirs(config_dir, exist_ok=True)

    if not os.path.exists(CONFIG_PATH):
        config.save_to_file(CONFIG_PATH)

    await init_redis()

    state.ytdlp_version = await probe_version(YTDLPCommandBuilder.build_version_command())
    state.ffmpeg_version = await probe_version(FFmpegCommandBuilder.build_version_command())

@app.on_event("shutdown")
async def shutdown_event():
    await close_redis()
