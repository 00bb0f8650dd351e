"""WebSocket transport - maps client frames onto SessionManager calls"""
from __future__ import annotations
import asyncio
import base64
import binascii
import json
import logging
import uuid
from typing import Any, Dict
from fastapi import WebSocket, WebSocketDisconnect
from .session import SessionManager
from .errors import emit_error, log_event

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


class EventType:
    """Event names shared with the client; do not rename"""
    START_AUDIO = "start-audio"
    AUDIO_CHUNK = "audio-chunk"
    AUDIO_STREAM_END = "audio-stream-end"
    TRANSCRIPT = "transcript"
    LLM_REPLY = "llm-reply"
    TTS_AUDIO = "tts-audio"


async def send_json_safe(ws: WebSocket, payload: dict):
    try:
        await ws.send_json(payload)
    except Exception as e:
        logger.debug("send_json to closed socket dropped: %s", e)

async def send_bytes_safe(ws: WebSocket, data: bytes):
    try:
        await ws.send_bytes(data)
    except Exception as e:
        logger.debug("send_bytes to closed socket dropped: %s", e)


def connection_sender(ws: WebSocket):
    """Per-connection send; a tts-audio event goes out as a JSON header
    immediately followed by one binary frame with the audio."""
    lock = asyncio.Lock()

    async def send(event: Dict[str, Any]):
        async with lock:
            if event.get("type") == EventType.TTS_AUDIO:
                audio = event["audio"]
                await send_json_safe(ws, {"type": EventType.TTS_AUDIO, "mime": event.get("mime", "audio/wav"), "bytes": len(audio)})
                await send_bytes_safe(ws, audio)
            else:
                await send_json_safe(ws, event)

    return send


async def handle(ws: WebSocket, manager: SessionManager):
    await ws.accept()
    sid = str(uuid.uuid4())
    send = connection_sender(ws)
    await manager.connect(sid, send)
    await send({"type":"protocol","version":PROTOCOL_VERSION})
    await send({"type":"session","session_id":sid})
    try:
        while True:
            data = await ws.receive()
            if data.get('type') == 'websocket.disconnect':
                break
            if data.get('bytes') is not None:
                await manager.on_frame(sid, data['bytes'])
            elif data.get('text') is not None:
                try:
                    msg = json.loads(data['text'])
                except json.JSONDecodeError:
                    await emit_error(send, "PROTOCOL_VIOLATION", "Invalid JSON")
                    log_event("protocol_error", reason="invalid_json", session_id=sid)
                    continue
                mtype = msg.get('type') if isinstance(msg, dict) else None
                if mtype == EventType.START_AUDIO:
                    await manager.on_start(sid)
                elif mtype == EventType.AUDIO_STREAM_END:
                    await manager.on_stop(sid)
                elif mtype == EventType.AUDIO_CHUNK:
                    try:
                        frame = base64.b64decode(msg.get('data') or "", validate=True)
                    except (binascii.Error, TypeError, ValueError):
                        await emit_error(send, "PROTOCOL_VIOLATION", "audio-chunk data must be base64")
                        continue
                    await manager.on_frame(sid, frame)
                else:
                    await emit_error(send, "PROTOCOL_VIOLATION", f"Unknown type: {mtype}")
            else:
                await emit_error(send, "PROTOCOL_VIOLATION", "Unsupported frame")
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(sid)
