"""
CareSync — FastAPI Server (Observer Bridge)

================================================================================
Architecture:
  • The host process builds SessionControllers (SessionController.open) and
    registers them in the module-level SessionRegistry
  • A UI attaches to one controller over a WebSocket, receives every
    SessionEvent as JSON and drives the session with commands
  • Closing the WebSocket tears the session down (streams, monitor, engine)
================================================================================

Endpoints:
  WS  /ws/session/{session_id}  — session event stream + commands
  GET /health                   — server health
  GET /sessions                 — list registered sessions
  GET /session/{session_id}     — full session snapshot
  GET /token                    — Jitsi room JWT for an appointment

Client → Server messages:
  { type: "run_checks" }                               → probe all capabilities
  { type: "retest", kind: "camera", device_id?: "..." }→ re-run one probe
  { type: "play_tone" }                                → speaker test sound
  { type: "join", override?: true }                    → enter the call
  { type: "end_call" }                                 → hang up / cancel
  { type: "submit_feedback", rating: 5, comment: "" }  → feedback → closed
  { type: "skip_feedback" }                            → closed
  { type: "toggle_audio" } / { type: "toggle_video" }
  { type: "ping" }                                     → keepalive

Server → Client messages:
  { type: "snapshot", data: {...} }        → full state on connect
  { type: "capability", data: {...} }      → one capability test changed
  { type: "readiness", data: {...} }       → readiness recomputed
  { type: "state", data: {...} }           → lifecycle transition
  { type: "audio_level", data: {...} }     → microphone level 0–100
  { type: "engine", data: {...} }          → conferencing engine event
  { type: "join_blocked", data: {...} }    → confirmation required
  { type: "feedback_ack", data: {...} }    → feedback result
  { type: "tone_played", data: {...} }     → speaker test result
  { type: "checks_complete", data: {...} } → readiness after run_checks
  { type: "pong" }                         → keepalive ack
  { type: "error", message: "..." }        → error
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import conference_cfg, server_cfg
from .core.errors import InvalidFeedback, JoinBlocked
from .core.models import CapabilityKind, FeedbackRecord, SessionContext, SessionEvent
from .services.conference import room_name_for, room_token
from .services.registry import SessionRegistry

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("caresync")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Session Registry
# ---------------------------------------------------------------------------

registry = SessionRegistry()

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CareSync session bridge starting...")
    logger.info(f"   Conference domain: {conference_cfg.domain} (jwt: {conference_cfg.has_auth})")
    yield
    logger.info("Shutting down — tearing down all sessions...")
    await registry.close_all()
    logger.info("CareSync session bridge stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CareSync — Telehealth Session Bridge",
    version=VERSION,
    description=(
        "Pre-call device verification and call lifecycle for CareSync "
        "video consultations."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "conference_domain": conference_cfg.domain,
        "conference_auth": conference_cfg.has_auth,
        "active_sessions": registry.active_count,
    }


@app.get("/token")
async def token(appointment_id: str, role: str = "patient", name: str = ""):
    if not conference_cfg.has_auth:
        return JSONResponse(status_code=503, content={"error": "Jitsi app credentials not configured"})

    context = SessionContext(
        appointment_id=appointment_id,
        participant_role=role,
        scheduled_start=None,
        session_type="online",
        status="scheduled",
        display_name=name or role.capitalize(),
    )
    room = room_name_for(appointment_id, conference_cfg)
    return {
        "domain": conference_cfg.domain,
        "room": room,
        "token": room_token(context, room, conference_cfg),
    }


@app.get("/sessions")
async def list_sessions():
    result: Dict[str, Any] = {}
    for sid, ctrl in registry.all_sessions.items():
        result[sid] = {
            "state": ctrl.state.value,
            "ready": ctrl.readiness.ready,
            "torn_down": ctrl.is_torn_down,
        }
    return result


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    ctrl = registry.get(session_id)
    if ctrl is None:
        return JSONResponse(status_code=404, content={"error": "session not found"})
    return ctrl.snapshot()


# ---------------------------------------------------------------------------
# WebSocket: Per-Session Event Stream
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@app.websocket("/ws/session/{session_id}")
async def websocket_session(ws: WebSocket, session_id: str):
    """
    One observer per connection. Every controller event is forwarded;
    commands map one-to-one onto controller operations.
    """
    await ws.accept()

    ctrl = registry.get(session_id)
    if ctrl is None:
        logger.warning(f"[{session_id}] WebSocket for unknown session")
        await ws.close(code=4404)
        return

    background: Set[asyncio.Task] = set()

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data, default=_json_default))
        except Exception as e:
            logger.debug(f"[{session_id}] Send failed: {e}")

    async def forward(event: SessionEvent) -> None:
        await send({"type": event.type, "data": event.data, "timestamp": event.timestamp})

    def spawn(coro: Any) -> None:
        task = asyncio.create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    async def _run_checks() -> None:
        snapshot = await ctrl.run_checks()
        await send({"type": "checks_complete", "data": snapshot.to_dict()})

    async def _retest(kind: CapabilityKind, device_id: Optional[str]) -> None:
        await ctrl.retest(kind, device_id)

    unsubscribe = ctrl.subscribe(forward)
    await send({"type": "snapshot", "data": ctrl.snapshot()})

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type", "")

            # ── Preview ──
            if msg_type == "run_checks":
                spawn(_run_checks())

            elif msg_type == "retest":
                try:
                    kind = CapabilityKind(message.get("kind", ""))
                except ValueError:
                    await send({"type": "error", "message": f"Unknown capability: {message.get('kind')!r}"})
                    continue
                spawn(_retest(kind, message.get("device_id")))

            elif msg_type == "play_tone":
                played = await ctrl.play_test_tone()
                await send({"type": "tone_played", "data": {"played": played}})

            # ── Lifecycle ──
            elif msg_type == "join":
                try:
                    await ctrl.join(override=bool(message.get("override", False)))
                except JoinBlocked as e:
                    await send({
                        "type": "join_blocked",
                        "data": {
                            "hard_blocks": e.hard_blocks,
                            "soft_blocks": e.soft_blocks,
                            "pending": e.pending,
                            "confirmation": e.confirmation,
                            "strong": e.requires_strong_confirmation,
                        },
                    })

            elif msg_type == "end_call":
                ctrl.end_call()

            elif msg_type == "toggle_audio":
                ctrl.toggle_audio()

            elif msg_type == "toggle_video":
                ctrl.toggle_video()

            # ── Feedback ──
            elif msg_type == "submit_feedback":
                record = FeedbackRecord(
                    rating=message.get("rating"),
                    comment=message.get("comment", "") or "",
                    notes=message.get("notes", "") or "",
                )
                try:
                    ack = await ctrl.submit_feedback(record)
                except InvalidFeedback as e:
                    await send({"type": "error", "message": str(e)})
                    continue
                await send({"type": "feedback_ack", "data": ack.to_dict()})

            elif msg_type == "skip_feedback":
                ack = ctrl.skip_feedback()
                await send({"type": "feedback_ack", "data": ack.to_dict()})

            # ── Keepalive ──
            elif msg_type == "ping":
                await send({"type": "pong"})

            else:
                await send({"type": "error", "message": f"Unknown message type: {msg_type!r}"})

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        # Clean up on disconnect: release devices first, then pending commands
        unsubscribe()
        await registry.close(session_id)
        for task in list(background):
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "caresync.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        reload=True,
        log_level="info",
    )
