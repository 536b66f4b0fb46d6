"""
CareSync — Stream Pool

Explicit owner of every media stream acquired during Preview.
At most one live stream per capability: adopting a new one releases the
previous one first. Nothing else in the core holds stream references
beyond a borrow (the audio monitor) that is always ended before release.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..core.interfaces import MediaStream
from ..core.models import CapabilityKind

logger = logging.getLogger("caresync.streams")


class StreamPool:

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._streams: Dict[CapabilityKind, MediaStream] = {}

    def adopt(self, kind: CapabilityKind, stream: MediaStream) -> None:
        """Take ownership of `stream`, releasing any stream already held for `kind`."""
        current = self._streams.get(kind)
        if current is not None and current is not stream:
            self.release(kind)
        self._streams[kind] = stream
        logger.debug(f"[{self._session_id}] Holding {kind.value} stream {stream.id}")

    def get(self, kind: CapabilityKind) -> Optional[MediaStream]:
        return self._streams.get(kind)

    def release(self, kind: CapabilityKind) -> bool:
        stream = self._streams.pop(kind, None)
        if stream is None:
            return False
        try:
            stream.stop()
        except Exception as e:
            logger.warning(f"[{self._session_id}] Stopping {kind.value} stream failed: {e}")
        logger.info(f"[{self._session_id}] Released {kind.value} stream {stream.id}")
        return True

    def release_all(self) -> List[CapabilityKind]:
        released = [kind for kind in list(self._streams) if self.release(kind)]
        return released

    @property
    def held(self) -> List[CapabilityKind]:
        return list(self._streams)

    def __len__(self) -> int:
        return len(self._streams)
