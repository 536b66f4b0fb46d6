"""
CareSync — Session Registry

Maps appointment_id → SessionController for the observer bridge.
Holds at most one non-closed controller per appointment.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..core.errors import CareSyncError
from .controller import SessionController

logger = logging.getLogger("caresync.registry")


class SessionAlreadyActive(CareSyncError):
    """A live controller already exists for this appointment."""


class SessionRegistry:

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionController] = {}

    def add(self, controller: SessionController) -> SessionController:
        sid = controller.session_id
        existing = self._sessions.get(sid)
        if existing is not None and existing is not controller:
            if not existing.call_session.is_closed and not existing.is_torn_down:
                raise SessionAlreadyActive(
                    f"Appointment {sid} already has a session in {existing.state.value}"
                )
            logger.info(f"SessionRegistry: replacing finished session {sid}")
        self._sessions[sid] = controller
        logger.info(f"SessionRegistry: added {sid} (total: {len(self._sessions)})")
        return controller

    def get(self, session_id: str) -> Optional[SessionController]:
        return self._sessions.get(session_id)

    async def close(self, session_id: str) -> Optional[SessionController]:
        controller = self._sessions.pop(session_id, None)
        if controller:
            await controller.teardown()
            logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._sessions)})")
        return controller

    async def close_all(self) -> None:
        for sid in list(self._sessions.keys()):
            await self.close(sid)

    @property
    def active_count(self) -> int:
        return sum(
            1 for c in self._sessions.values()
            if not c.call_session.is_closed and not c.is_torn_down
        )

    @property
    def all_sessions(self) -> Dict[str, SessionController]:
        return dict(self._sessions)
