"""Raw-archive sink writing captured frames to a WAV file."""

from __future__ import annotations

import logging
import threading
import time
import wave
from pathlib import Path
from queue import Empty, Queue
from typing import Optional

import numpy as np

from models import AudioFrame

logger = logging.getLogger(__name__)


def archive_path_for(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"recording_{int(time.time())}.wav"


class WavArchiveWriter:
    """Consume frames from a queue on its own thread and write 16-bit PCM.

    A ``None`` item on the queue ends the file.
    """

    def __init__(self, path: Path, sample_rate: int, channels: int) -> None:
        self.path = path
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_written = 0
        self._queue: Optional[Queue[AudioFrame | None]] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, frame_queue: Queue[AudioFrame | None]) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._queue = frame_queue
        self._thread = threading.Thread(target=self._worker, name="archive-writer", daemon=True)
        self._thread.start()

    def join(self, timeout: float = 5.0) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _worker(self) -> None:
        if self._queue is None:
            return
        with wave.open(str(self.path), "wb") as wf:
            wf.setnchannels(self.channels)
            wf.setsampwidth(2)
            wf.setframerate(self.sample_rate)
            while True:
                try:
                    frame = self._queue.get(timeout=0.2)
                except Empty:
                    continue
                if frame is None:  # Sentinel
                    break
                wf.writeframes(_to_pcm16(frame))
                self.frames_written += frame.frame_count
        logger.info("Saved recording to %s (%d frames)", self.path, self.frames_written)


def _to_pcm16(frame: AudioFrame) -> bytes:
    if frame.samples.dtype == np.int16:
        return frame.samples.tobytes()
    clipped = np.clip(frame.as_float32(), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()
