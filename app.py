"""
voicepipe - real-time voice pipeline API
WebSocket sessions: PCM in -> ffmpeg -> whisper.cpp -> LLM -> TTS -> client
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket

from backend.pipeline.config import Settings, load_settings
from backend.pipeline.session import SessionManager
from backend.pipeline.websocket import handle as pipeline_ws_handle


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(settings: Optional[Settings] = None, manager: Optional[SessionManager] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create working directories and the session manager; close sessions on exit"""
        logger.info("Starting voicepipe")
        settings.ensure_directories()
        logger.info(f"Recordings dir: {settings.recordings_dir.resolve()}")
        logger.info(f"Whisper dir: {settings.whisper_dir.resolve()}")
        if app.state.manager is None:
            app.state.manager = SessionManager(settings)
        yield
        logger.info(f"Shutting down voicepipe ({app.state.manager.active_count} active sessions)")
        await app.state.manager.shutdown()
        logger.info("Shutdown cleanup completed")

    app = FastAPI(
        title="voicepipe",
        description="Real-time voice pipeline over WebSocket",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager

    @app.get("/")
    async def root():
        return {"message": "voicepipe", "websocket": "/ws"}

    @app.get("/health")
    async def health_check():
        active = app.state.manager.active_count if app.state.manager else 0
        return {"status": "healthy", "active_sessions": active}

    @app.get("/api/config")
    async def get_config():
        return {"pipeline": settings.as_dict()}

    @app.websocket("/ws")
    async def ws_primary(ws: WebSocket):
        await pipeline_ws_handle(ws, app.state.manager)

    return app


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
