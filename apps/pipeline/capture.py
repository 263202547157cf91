"""
capture.py — Utterance capture: speech gate → WAV → coordinator
=================================================================

    detector.on_speech_start()        → coordinator.on_speech_start()   (sync)
    detector.on_speech_end(samples)   → encode_wav → coordinator.on_speech_end(wav)  (task)

``EnergyGate`` is the frame-level RMS speech gate used by the microphone
detector in devices.py.  It has no device dependency, so it can be fed
synthetic frames directly.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections import deque
from math import gcd
from typing import Callable, Optional, Protocol

import numpy as np
import scipy.signal
import soundfile as sf

from config import CaptureConfig

log = logging.getLogger("operator_engine.capture")


# ---------------------------------------------------------------------------
# WAV helpers
# ---------------------------------------------------------------------------

def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Float samples in [-1, 1] → 16-bit PCM mono WAV bytes."""
    data = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    buf = io.BytesIO()
    sf.write(buf, data, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def decode_wav(wav_bytes: bytes) -> tuple[np.ndarray, int]:
    """WAV bytes → (float32 mono samples, sample rate)."""
    data, sr = sf.read(io.BytesIO(wav_bytes), dtype="float32")
    if data.ndim == 2:
        data = data[:, 0]  # mono
    return data, sr


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate:
        return np.asarray(samples, dtype=np.float32)
    g = gcd(src_rate, dst_rate)
    out = scipy.signal.resample_poly(samples, dst_rate // g, src_rate // g)
    return out.astype(np.float32)


# ---------------------------------------------------------------------------
# Detector contract + RMS gate
# ---------------------------------------------------------------------------

SpeechStartCallback = Callable[[], None]
SpeechEndCallback = Callable[[np.ndarray], None]


class SpeechActivityDetector(Protocol):
    def bind(self, on_speech_start: SpeechStartCallback, on_speech_end: SpeechEndCallback) -> None: ...

    def start(self) -> None: ...

    def pause(self) -> None: ...


class EnergyGate:
    """Onset after ``min_speech_frames`` loud frames, end after ``redemption_frames`` quiet ones."""

    def __init__(
        self,
        config: CaptureConfig,
        on_speech_start: SpeechStartCallback,
        on_speech_end: SpeechEndCallback,
    ):
        self._config = config
        self._on_speech_start = on_speech_start
        self._on_speech_end = on_speech_end
        self.frame_len = config.sample_rate * config.frame_ms // 1000
        self._pending = np.zeros(0, dtype=np.float32)
        self._pre: deque[np.ndarray] = deque(maxlen=config.pre_speech_pad_frames + config.min_speech_frames)
        self._speech: list[np.ndarray] = []
        self._voiced_run = 0
        self._silent_run = 0
        self.in_speech = False

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
        self._pre.clear()
        self._speech = []
        self._voiced_run = 0
        self._silent_run = 0
        self.in_speech = False

    def feed(self, samples: np.ndarray) -> None:
        """Accept any number of float32 samples; full frames are processed."""
        data = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32).reshape(-1)])
        n_frames = len(data) // self.frame_len
        for i in range(n_frames):
            self._frame(data[i * self.frame_len:(i + 1) * self.frame_len])
        self._pending = data[n_frames * self.frame_len:]

    def _frame(self, frame: np.ndarray) -> None:
        rms = float(np.sqrt(np.mean(frame ** 2)))
        voiced = rms >= self._config.rms_threshold

        if not self.in_speech:
            self._pre.append(frame)
            self._voiced_run = self._voiced_run + 1 if voiced else 0
            if self._voiced_run >= self._config.min_speech_frames:
                self.in_speech = True
                self._speech = list(self._pre)
                self._pre.clear()
                self._silent_run = 0
                log.debug("event=speech_onset rms=%.4f", rms)
                self._on_speech_start()
            return

        self._speech.append(frame)
        self._silent_run = 0 if voiced else self._silent_run + 1
        if self._silent_run >= self._config.redemption_frames:
            utterance = np.concatenate(self._speech)
            self._speech = []
            self._voiced_run = 0
            self.in_speech = False
            log.debug("event=speech_end samples=%d", len(utterance))
            self._on_speech_end(utterance)


# ---------------------------------------------------------------------------
# Utterance capture
# ---------------------------------------------------------------------------

class UtteranceCapture:
    """Binds a detector to a TurnCoordinator."""

    def __init__(
        self,
        detector: SpeechActivityDetector,
        coordinator,
        sample_rate: int,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._detector = detector
        self._coordinator = coordinator
        self._sample_rate = sample_rate
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()
        detector.bind(self._handle_speech_start, self._handle_speech_end)

    def start(self) -> None:
        self._detector.start()
        log.info("event=capture_started sample_rate=%d", self._sample_rate)

    def pause(self) -> None:
        self._detector.pause()
        log.info("event=capture_paused")

    def _handle_speech_start(self) -> None:
        self._coordinator.on_speech_start()

    def _handle_speech_end(self, samples: np.ndarray) -> asyncio.Task:
        wav = encode_wav(samples, self._sample_rate)
        log.info("event=utterance_captured seconds=%.2f bytes=%d", len(samples) / self._sample_rate, len(wav))
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._coordinator.on_speech_end(wav))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
