"""
devices.py — Microphone detector and speaker playback (sounddevice)
=====================================================================

Both classes run PortAudio callbacks on the audio thread.  The microphone
hands frames to the event loop with ``call_soon_threadsafe``; the speaker
drains a lock-protected buffer.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

import numpy as np
import sounddevice as sd

from apps.pipeline.capture import (
    EnergyGate,
    SpeechEndCallback,
    SpeechStartCallback,
    decode_wav,
    resample,
)
from config import CaptureConfig

log = logging.getLogger("operator_engine.devices")


class MicrophoneVAD:
    """SpeechActivityDetector over the default (or configured) input device."""

    def __init__(self, config: CaptureConfig, loop: asyncio.AbstractEventLoop):
        self._config = config
        self._loop = loop
        self._gate: Optional[EnergyGate] = None
        self._stream: Optional[sd.InputStream] = None
        self._listening = False

    def bind(self, on_speech_start: SpeechStartCallback, on_speech_end: SpeechEndCallback) -> None:
        self._gate = EnergyGate(self._config, on_speech_start, on_speech_end)

    def start(self) -> None:
        if self._gate is None:
            raise RuntimeError("MicrophoneVAD.start() before bind()")
        if self._stream is None:
            self._stream = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self._gate.frame_len,
                device=self._config.device,
                callback=self._callback,
            )
            self._stream.start()
            log.info("event=mic_started device=%s", self._config.device)
        self._listening = True

    def pause(self) -> None:
        self._listening = False
        if self._gate is not None:
            self._loop.call_soon_threadsafe(self._gate.reset)

    def close(self) -> None:
        self._listening = False
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                log.warning("event=mic_close_error error=%s", exc)
            self._stream = None

    # -- sounddevice audio-thread callback --

    def _callback(self, indata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if not self._listening or self._gate is None:
            return
        self._loop.call_soon_threadsafe(self._gate.feed, indata[:, 0].copy())


class DevicePlayback:
    """Playback over sd.OutputStream.  ``play`` replaces whatever is queued."""

    CHANNELS = 1

    def __init__(self, samplerate: int = 24000, device: Optional[int] = None):
        self._samplerate = samplerate
        self._device = device
        self._buf: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream: Optional[sd.OutputStream] = None

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return bool(self._buf)

    def open(self) -> None:
        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            samplerate=self._samplerate,
            channels=self.CHANNELS,
            dtype="float32",
            callback=self._callback,
            blocksize=1024,
            device=self._device,
        )
        self._stream.start()
        log.info("event=speaker_started samplerate=%d", self._samplerate)

    def play(self, audio: bytes) -> None:
        samples, sr = decode_wav(audio)
        samples = resample(samples, sr, self._samplerate)
        self.open()
        with self._lock:
            self._buf = [samples]
        log.info("event=playback_start seconds=%.2f", len(samples) / self._samplerate)

    def pause(self) -> None:
        with self._lock:
            dropped = sum(len(c) for c in self._buf)
            self._buf.clear()
        if dropped:
            log.info("event=playback_paused dropped_samples=%d", dropped)

    def close(self) -> None:
        self.pause()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                log.warning("event=speaker_close_error error=%s", exc)
            self._stream = None

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        needed = frames
        pos = 0
        with self._lock:
            while needed > 0 and self._buf:
                chunk = self._buf[0]
                take = min(needed, len(chunk))
                outdata[pos:pos + take, 0] = chunk[:take]
                pos += take
                needed -= take
                if take < len(chunk):
                    self._buf[0] = chunk[take:]
                else:
                    self._buf.pop(0)
        if needed > 0:
            outdata[pos:, 0] = 0.0
