"""
CareSync — Appointment Context Loader

Resolves an appointment id into an immutable SessionContext before any
device is touched. Only online, non-cancelled appointments can host a
video call; everything else is refused up front.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

import httpx

from ..core.config import ApiConfig, api_cfg
from ..core.errors import AppointmentIneligible, AppointmentLoadError
from ..core.interfaces import AppointmentSource
from ..core.models import SessionContext

logger = logging.getLogger("caresync.appointments")

ONLINE = "online"
CANCELLED = "cancelled"

_ROLES = ("patient", "doctor")


class HttpAppointmentSource:
    """GET {base_url}/appointments/{id} on the CareSync REST API."""

    def __init__(
        self,
        cfg: ApiConfig = api_cfg,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._transport = transport

    async def fetch(self, appointment_id: str) -> Mapping[str, Any]:
        url = f"{self._cfg.base_url.rstrip('/')}/appointments/{appointment_id}"
        async with httpx.AsyncClient(
            timeout=self._cfg.timeout,
            headers=self._cfg.headers,
            transport=self._transport,
        ) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            body = resp.json()

        # The API wraps the record as {"appointment": {...}}
        if isinstance(body, dict) and isinstance(body.get("appointment"), dict):
            return body["appointment"]
        return body


def _parse_start(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return raw
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise AppointmentLoadError(f"Unparseable scheduledTime: {raw!r}") from e


def _counterpart(record: Mapping[str, Any], role: str) -> tuple[str, str]:
    if record.get("counterpartName"):
        return str(record["counterpartName"]), str(record.get("counterpartRole", ""))
    # Fall back to the populated patient/doctor references
    other = "doctor" if role == "patient" else "patient"
    ref = record.get(other)
    if isinstance(ref, Mapping):
        return str(ref.get("name", "")), other
    return "", other


class AppointmentContextLoader:

    def __init__(self, source: AppointmentSource) -> None:
        self._source = source

    async def load(
        self,
        appointment_id: str,
        participant_role: str,
        display_name: Optional[str] = None,
    ) -> SessionContext:
        """
        Fetch and validate the appointment.

        Raises AppointmentLoadError if the record cannot be obtained and
        AppointmentIneligible if it is not an online, active appointment.
        """
        if participant_role not in _ROLES:
            raise AppointmentLoadError(f"Unknown participant role: {participant_role!r}")

        try:
            record = await self._source.fetch(appointment_id)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise AppointmentLoadError(f"Appointment {appointment_id} not found") from e
            raise AppointmentLoadError(
                f"Failed to load appointment {appointment_id}: HTTP {e.response.status_code}"
            ) from e
        except Exception as e:
            logger.error(f"[{appointment_id}] Appointment fetch failed: {e}")
            raise AppointmentLoadError(f"Failed to load appointment {appointment_id}: {e}") from e

        if not record:
            raise AppointmentLoadError(f"Appointment {appointment_id} not found")

        session_type = str(record.get("type", ""))
        status = str(record.get("status", ""))
        if session_type != ONLINE:
            logger.warning(f"[{appointment_id}] Refused: appointment type is {session_type!r}")
            raise AppointmentIneligible(appointment_id, "This appointment is not an online consultation")
        if status == CANCELLED:
            logger.warning(f"[{appointment_id}] Refused: appointment is cancelled")
            raise AppointmentIneligible(appointment_id, "This appointment has been cancelled")

        counterpart_name, counterpart_role = _counterpart(record, participant_role)
        context = SessionContext(
            appointment_id=str(record.get("id") or record.get("_id") or appointment_id),
            participant_role=participant_role,
            scheduled_start=_parse_start(record.get("scheduledTime")),
            session_type=session_type,
            status=status,
            display_name=display_name or participant_role.capitalize(),
            counterpart_name=counterpart_name,
            counterpart_role=counterpart_role,
        )
        logger.info(
            f"[{context.appointment_id}] Context loaded: {participant_role} "
            f"with {counterpart_name or 'unknown'} ({status})"
        )
        return context
