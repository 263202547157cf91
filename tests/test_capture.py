import asyncio

import numpy as np

from apps.pipeline.capture import EnergyGate, UtteranceCapture, decode_wav, encode_wav, resample
from config import CaptureConfig


def test_encode_wav_is_16bit_pcm_at_rate():
    samples = 0.1 * np.sin(2 * np.pi * 220 * np.linspace(0, 0.5, 8000, endpoint=False))

    wav = encode_wav(samples, 16000)
    decoded, sr = decode_wav(wav)

    assert wav[:4] == b"RIFF"
    assert sr == 16000
    assert len(decoded) == 8000
    assert np.max(np.abs(decoded - samples)) < 1e-3


def test_resample_changes_length():
    samples = np.zeros(16000, dtype=np.float32)
    assert len(resample(samples, 16000, 24000)) == 24000
    assert resample(samples, 16000, 16000) is not None


def _gate(**overrides):
    config = CaptureConfig(**{"frame_ms": 10, "min_speech_frames": 3, "redemption_frames": 4,
                              "pre_speech_pad_frames": 2, **overrides})
    events = []
    gate = EnergyGate(config, lambda: events.append(("start", None)), lambda s: events.append(("end", s)))
    return gate, events


def test_energy_gate_detects_one_utterance():
    gate, events = _gate()
    frame = gate.frame_len
    quiet = np.zeros(frame * 5, dtype=np.float32)
    loud = np.full(frame * 6, 0.5, dtype=np.float32)

    gate.feed(quiet)
    gate.feed(loud)
    assert [e[0] for e in events] == ["start"]
    assert gate.in_speech

    gate.feed(quiet)
    assert [e[0] for e in events] == ["start", "end"]
    utterance = events[1][1]
    # 2 padding frames + 6 loud frames + 4 silent redemption frames
    assert len(utterance) == frame * 12
    assert not gate.in_speech


def test_energy_gate_ignores_short_blips():
    gate, events = _gate()
    frame = gate.frame_len
    blip = np.concatenate([np.full(frame * 2, 0.5), np.zeros(frame * 10)]).astype(np.float32)

    gate.feed(blip)

    assert events == []


def test_energy_gate_handles_partial_frames():
    gate, events = _gate()
    loud = np.full(gate.frame_len * 3, 0.5, dtype=np.float32)
    for chunk in np.array_split(loud, 7):
        gate.feed(chunk)
    assert [e[0] for e in events] == ["start"]


class _Detector:
    def __init__(self):
        self.started = False
        self.paused = False

    def bind(self, on_speech_start, on_speech_end):
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end

    def start(self):
        self.started = True

    def pause(self):
        self.paused = True


class _Coordinator:
    def __init__(self):
        self.speech_starts = 0
        self.utterances = []

    def on_speech_start(self):
        self.speech_starts += 1

    async def on_speech_end(self, wav):
        self.utterances.append(wav)


def test_utterance_capture_forwards_detector_events():
    async def run():
        detector = _Detector()
        coordinator = _Coordinator()
        capture = UtteranceCapture(detector, coordinator, sample_rate=16000)

        capture.start()
        assert detector.started

        detector.on_speech_start()
        assert coordinator.speech_starts == 1

        detector.on_speech_end(np.zeros(1600, dtype=np.float32))
        await capture.drain()
        assert len(coordinator.utterances) == 1
        assert coordinator.utterances[0][:4] == b"RIFF"

        capture.pause()
        assert detector.paused

    asyncio.run(run())
