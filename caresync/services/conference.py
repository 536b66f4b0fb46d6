"""
CareSync — Conference Engine Adapter

================================================================================
BOUNDARY WRAPPER AROUND THE EXTERNAL CONFERENCING ENGINE (JITSI MEET)
================================================================================

  initialize(context, selections)
    → derive the room name (stable prefix + appointment id)
    → optionally sign a room JWT
    → construct the engine through the injected factory
    → attach listeners for the engine's event names
    → arm the connection timeout (the only join timeout in the core)
    → return an EngineHandle (toggle_audio / toggle_video / hangup)

Engine events are translated into EngineEvent objects and fanned out to
every subscriber; the SessionController is just one of them.

dispose() is idempotent and safe from any lifecycle stage.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

import jwt

from ..core.config import ConferenceConfig, conference_cfg
from ..core.errors import EngineInitializationFailure
from ..core.interfaces import ConferenceEngine, EngineFactory
from ..core.models import DeviceSelections, EngineEvent, EngineEventType, SessionContext

logger = logging.getLogger("caresync.conference")

# External engine event name → normalised type
ENGINE_EVENTS: Dict[str, EngineEventType] = {
    "videoConferenceJoined": EngineEventType.JOINED,
    "videoConferenceLeft": EngineEventType.LEFT,
    "participantJoined": EngineEventType.PARTICIPANT_JOINED,
    "participantLeft": EngineEventType.PARTICIPANT_LEFT,
    "audioMuteStatusChanged": EngineEventType.AUDIO_MUTE_CHANGED,
    "videoMuteStatusChanged": EngineEventType.VIDEO_MUTE_CHANGED,
    "screenSharingStatusChanged": EngineEventType.SCREEN_SHARE_CHANGED,
    "errorOccurred": EngineEventType.ERROR,
    "readyToClose": EngineEventType.READY_TO_CLOSE,
}

# Engine commands
TOGGLE_AUDIO = "toggleAudio"
TOGGLE_VIDEO = "toggleVideo"
HANG_UP = "hangup"


def room_name_for(appointment_id: str, cfg: ConferenceConfig = conference_cfg) -> str:
    """Both participants resolve the same room without any signalling."""
    return f"{cfg.room_prefix}{appointment_id}"


def room_token(
    context: SessionContext,
    room_name: str,
    cfg: ConferenceConfig = conference_cfg,
    now: Optional[int] = None,
) -> Optional[str]:
    """HS256 room token for JWT-secured Jitsi deployments; None when auth is off."""
    if not cfg.has_auth:
        return None
    issued = int(now if now is not None else time.time())
    payload = {
        "context": {
            "user": {
                "id": f"{context.participant_role}-{context.appointment_id}",
                "name": context.display_name,
                "role": context.participant_role,
            },
        },
        "aud": "jitsi",
        "iss": cfg.app_id,
        "sub": cfg.domain,
        "room": room_name,
        "iat": issued,
        "exp": issued + cfg.token_ttl_s,
    }
    return jwt.encode(payload, cfg.api_key, algorithm="HS256")


def _event_payload(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    return {"value": raw}


def _error_message(payload: Dict[str, Any]) -> str:
    for key in ("message", "error", "name", "value"):
        value = payload.get(key)
        if value:
            return str(value)
    return "Conference engine error"


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------

class EngineHandle:
    """Direct commands into a live engine. Commands after dispose are dropped."""

    def __init__(self, adapter: "ConferenceEngineAdapter", room_name: str, token: Optional[str]) -> None:
        self._adapter = adapter
        self.room_name = room_name
        self.token = token

    def toggle_audio(self) -> None:
        self._adapter.execute(TOGGLE_AUDIO)

    def toggle_video(self) -> None:
        self._adapter.execute(TOGGLE_VIDEO)

    def hangup(self) -> None:
        self._adapter.execute(HANG_UP)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class ConferenceEngineAdapter:
    """
    Translates one engine instance's lifecycle into EngineEvents.

    Usage:
        adapter = ConferenceEngineAdapter(factory)
        adapter.subscribe(on_event)
        handle = await adapter.initialize(context, selections)
        ...
        adapter.dispose()
    """

    def __init__(
        self,
        factory: EngineFactory,
        cfg: ConferenceConfig = conference_cfg,
    ) -> None:
        self._factory = factory
        self._cfg = cfg
        self._engine: Optional[ConferenceEngine] = None
        self._listeners: Dict[str, Callable[[Any], None]] = {}
        self._subscribers: List[Callable[[EngineEvent], Any]] = []
        self._subscriber_tasks: Set[asyncio.Task] = set()
        self._timeout_task: Optional[asyncio.Task] = None
        self._handle: Optional[EngineHandle] = None
        self._joined = False
        self._disposed = False
        self._session_id = ""

    @property
    def handle(self) -> Optional[EngineHandle]:
        return self._handle

    @property
    def is_active(self) -> bool:
        return self._engine is not None and not self._disposed

    @property
    def joined(self) -> bool:
        return self._joined

    # ── Subscription ────────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[EngineEvent], Any]) -> Callable[[], None]:
        self._subscribers.append(listener)

        def unsubscribe() -> None:
            if listener in self._subscribers:
                self._subscribers.remove(listener)

        return unsubscribe

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def initialize(
        self, context: SessionContext, selections: DeviceSelections
    ) -> EngineHandle:
        """
        Create the engine and start listening. Raises
        EngineInitializationFailure if the engine cannot be constructed.
        """
        if self._disposed:
            raise EngineInitializationFailure("Adapter already disposed")
        if self._engine is not None:
            raise EngineInitializationFailure("Engine already initialised")

        self._session_id = context.appointment_id
        room = room_name_for(context.appointment_id, self._cfg)
        try:
            token = room_token(context, room, self._cfg)
        except Exception as e:
            raise EngineInitializationFailure(f"Could not sign room token: {e}") from e

        options: Dict[str, Any] = {
            "room_name": room,
            "display_name": context.display_name or context.participant_role.capitalize(),
            "start_muted": selections.start_muted,
            "start_video_off": selections.start_video_off,
            "devices": {
                "camera": selections.camera_id,
                "microphone": selections.microphone_id,
                "speaker": selections.speaker_id,
            },
        }
        if token:
            options["jwt"] = token

        logger.info(f"[{self._session_id}] Initialising conference engine for room {room} on {self._cfg.domain}")
        try:
            engine = self._factory(self._cfg.domain, options)
            if asyncio.iscoroutine(engine):
                engine = await engine
        except Exception as e:
            logger.error(f"[{self._session_id}] Conference engine failed to initialise: {e}")
            raise EngineInitializationFailure(f"Failed to initialize video meeting: {e}") from e

        if self._disposed:
            # dispose() raced the factory; do not leak the engine
            self._safe_dispose(engine)
            raise EngineInitializationFailure("Adapter disposed during initialisation")

        self._engine = engine
        for name, event_type in ENGINE_EVENTS.items():
            listener = self._make_listener(event_type)
            self._listeners[name] = listener
            engine.add_event_listener(name, listener)

        if self._cfg.connect_timeout_s > 0:
            self._timeout_task = asyncio.get_running_loop().create_task(
                self._connect_timeout(), name=f"engine-timeout-{self._session_id}"
            )

        self._handle = EngineHandle(self, room, token)
        return self._handle

    def execute(self, command: str, *args: Any) -> None:
        if not self.is_active:
            logger.debug(f"[{self._session_id}] Dropping '{command}' — engine not active")
            return
        try:
            self._engine.execute_command(command, *args)
        except Exception as e:
            logger.warning(f"[{self._session_id}] Engine command '{command}' failed: {e}")

    def dispose(self) -> None:
        """Detach listeners, disarm the timeout, dispose the engine. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        if self._timeout_task and not self._timeout_task.done():
            self._timeout_task.cancel()
        self._timeout_task = None

        engine, self._engine = self._engine, None
        if engine is not None:
            for name, listener in self._listeners.items():
                try:
                    engine.remove_event_listener(name, listener)
                except Exception as e:
                    logger.debug(f"[{self._session_id}] remove listener {name}: {e}")
            self._safe_dispose(engine)
        self._listeners.clear()
        logger.info(f"[{self._session_id}] Conference engine disposed")

    # ── Internals ───────────────────────────────────────────────────────

    def _make_listener(self, event_type: EngineEventType) -> Callable[[Any], None]:
        def listener(raw: Any = None) -> None:
            self._dispatch(EngineEvent(type=event_type, payload=_event_payload(raw)))
        return listener

    def _dispatch(self, event: EngineEvent) -> None:
        if self._disposed:
            return
        if event.type == EngineEventType.JOINED:
            self._joined = True
            if self._timeout_task and not self._timeout_task.done():
                self._timeout_task.cancel()
        if event.type == EngineEventType.ERROR:
            event.payload.setdefault("message", _error_message(event.payload))
            logger.warning(f"[{self._session_id}] Engine error: {event.payload['message']}")
        else:
            logger.debug(f"[{self._session_id}] Engine event: {event.type.value}")

        for subscriber in list(self._subscribers):
            try:
                cb = subscriber(event)
                if asyncio.iscoroutine(cb):
                    task = asyncio.get_running_loop().create_task(cb)
                    self._subscriber_tasks.add(task)
                    task.add_done_callback(self._subscriber_done)
            except Exception as e:
                logger.error(f"[{self._session_id}] Engine subscriber error: {e}")

    def _subscriber_done(self, task: asyncio.Task) -> None:
        self._subscriber_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self._session_id}] Engine subscriber error: {task.exception()}")

    async def _connect_timeout(self) -> None:
        try:
            await asyncio.sleep(self._cfg.connect_timeout_s)
        except asyncio.CancelledError:
            return
        if not self._joined and not self._disposed:
            self._dispatch(EngineEvent(
                type=EngineEventType.ERROR,
                payload={
                    "message": f"Timed out connecting to the conference after {self._cfg.connect_timeout_s:g}s",
                    "timeout": True,
                },
            ))

    def _safe_dispose(self, engine: ConferenceEngine) -> None:
        try:
            engine.dispose()
        except Exception as e:
            logger.warning(f"[{self._session_id}] Engine dispose failed: {e}")
