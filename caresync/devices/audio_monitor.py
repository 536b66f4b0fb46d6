"""
CareSync — Audio Level Monitor

================================================================================
MICROPHONE LEVEL METER — THE ONLY RECURRING BACKGROUND TASK
================================================================================

While the microphone stream is live in Preview:

  1. Every ~100 ms the monitor reads the latest fft_size PCM samples.
  2. LevelAnalyzer applies a Blackman window and a real FFT.
  3. Magnitudes are converted to dB and scaled to bytes between
     min_decibels and max_decibels (analyser-node semantics), smoothed
     per stream.
  4. The mean byte value, clamped to [0, 100], is published as the level.

stop() is synchronous: it cancels the task, bumps the generation so an
in-flight tick can never publish, and drops the analyzer. A restart with a
new stream starts from a fresh analyzer, so no smoothing state leaks
across streams.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import numpy as np

from ..core.config import ProbeConfig, probe_cfg
from ..core.interfaces import MediaStream

logger = logging.getLogger("caresync.audio")


class LevelAnalyzer:
    """
    Frequency-domain level meter for one stream.
    Owns the smoothing buffer; discarded on stop().
    """

    def __init__(self, cfg: ProbeConfig = probe_cfg) -> None:
        self.fft_size = cfg.fft_size
        self._min_db = cfg.min_decibels
        self._max_db = cfg.max_decibels
        self._smoothing = cfg.smoothing
        self._window = np.blackman(self.fft_size).astype(np.float32)
        self._smoothed = np.zeros(self.fft_size // 2, dtype=np.float32)

    def byte_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        """fft_size/2 frequency bins scaled to 0–255."""
        frame = np.zeros(self.fft_size, dtype=np.float32)
        samples = np.asarray(samples, dtype=np.float32)[-self.fft_size:]
        if samples.size:
            frame[-samples.size:] = samples

        spectrum = np.abs(np.fft.rfft(frame * self._window))[: self.fft_size // 2]
        magnitude = spectrum / self.fft_size

        self._smoothed = (
            self._smoothing * self._smoothed + (1.0 - self._smoothing) * magnitude
        ).astype(np.float32)

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = 255.0 * (db - self._min_db) / (self._max_db - self._min_db)
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def level(self, samples: np.ndarray) -> float:
        """Normalised [0, 100] reading for the latest samples."""
        bins = self.byte_frequency_data(samples)
        average = float(np.mean(bins)) if bins.size else 0.0
        return float(min(100, round(average)))


class AudioLevelMonitor:
    """
    Publishes the microphone level at a fixed cadence.

    Lifecycle:
        monitor = AudioLevelMonitor(on_level=callback)
        monitor.start(stream)     # never blocks
        monitor.stop()            # synchronous; safe to release the stream after
    """

    def __init__(
        self,
        on_level: Optional[Callable[[float], Any]] = None,
        cfg: ProbeConfig = probe_cfg,
        session_id: str = "",
    ) -> None:
        self._on_level = on_level
        self._cfg = cfg
        self._session_id = session_id

        self._stream: Optional[MediaStream] = None
        self._analyzer: Optional[LevelAnalyzer] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._level = 0.0
        self.samples_published = 0

    @property
    def level(self) -> float:
        return self._level

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    def start(self, stream: MediaStream) -> None:
        """Begin sampling `stream`. Replaces (stop-then-restart) any current stream."""
        self.stop()
        self._generation += 1
        self._stream = stream
        self._analyzer = LevelAnalyzer(self._cfg)
        self._task = asyncio.get_running_loop().create_task(
            self._sample_loop(self._generation, stream, self._analyzer),
            name=f"audio-level-{self._session_id or stream.id}",
        )
        logger.info(f"[{self._session_id}] Audio level monitor started on stream {stream.id}")

    def stop(self) -> None:
        """Halt sampling and release analysis resources. Idempotent."""
        if self._task is None and self._stream is None:
            return
        self._generation += 1
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._stream = None
        self._analyzer = None
        self._level = 0.0
        logger.info(f"[{self._session_id}] Audio level monitor stopped")

    async def _sample_loop(
        self, generation: int, stream: MediaStream, analyzer: LevelAnalyzer
    ) -> None:
        while generation == self._generation:
            try:
                if stream.active:
                    level = analyzer.level(stream.read_samples(analyzer.fft_size))
                    if generation != self._generation:
                        break
                    self._level = level
                    self.samples_published += 1
                    if self._on_level:
                        cb = self._on_level(level)
                        if asyncio.iscoroutine(cb):
                            await cb

                await asyncio.sleep(self._cfg.sample_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"[{self._session_id}] Audio level tick error: {e}")
                await asyncio.sleep(self._cfg.sample_interval)
