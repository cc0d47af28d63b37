# coding=utf-8
"""
PCM16 little-endian framing for capture clients and the relay.
"""
from __future__ import annotations

from typing import Iterable, Iterator, List

import numpy as np

SAMPLE_RATE = 16000
FRAME_SAMPLES = 2048


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Clamp to [-1, 1] and scale asymmetrically: negatives by 32768,
    positives by 32767, rounding to the nearest integer.
    """
    wav = np.clip(np.asarray(samples, dtype=np.float32).reshape(-1), -1.0, 1.0).astype(np.float64)
    scaled = np.where(wav < 0, wav * 32768.0, wav * 32767.0)
    return np.round(scaled).astype(np.int16)


def pcm16_to_float(pcm16: np.ndarray) -> np.ndarray:
    values = np.asarray(pcm16, dtype=np.int16).reshape(-1).astype(np.float32)
    return np.where(values < 0, values / 32768.0, values / 32767.0).astype(np.float32)


def encode_pcm16le(samples: np.ndarray) -> bytes:
    return float_to_pcm16(samples).astype("<i2").tobytes()


def decode_pcm16le(raw: bytes) -> np.ndarray:
    if not isinstance(raw, (bytes, bytearray)):
        raise ValueError("binary frame is required")
    if len(raw) % 2 != 0:
        raise ValueError("pcm16le bytes length must be even")
    if not raw:
        return np.zeros((0,), dtype=np.float32)
    return pcm16_to_float(np.frombuffer(bytes(raw), dtype="<i2"))


class FrameEncoder:
    """
    Accumulates float samples and emits fixed-size PCM16LE frames
    (``frame_samples`` samples, i.e. 2 * frame_samples bytes) in order.
    """

    def __init__(self, frame_samples: int = FRAME_SAMPLES) -> None:
        self.frame_samples = max(1, int(frame_samples))
        self._pending = np.zeros((0,), dtype=np.float32)

    @property
    def pending_samples(self) -> int:
        return int(self._pending.shape[0])

    def push(self, samples: np.ndarray) -> List[bytes]:
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        if chunk.size:
            self._pending = np.concatenate([self._pending, chunk])
        out: List[bytes] = []
        while self._pending.shape[0] >= self.frame_samples:
            head = self._pending[: self.frame_samples]
            self._pending = self._pending[self.frame_samples :]
            out.append(encode_pcm16le(head))
        return out

    def frames(self, chunks: Iterable[np.ndarray]) -> Iterator[bytes]:
        """Lazily frame a chunk iterable; not restartable."""
        for chunk in chunks:
            yield from self.push(chunk)

    def reset(self) -> None:
        self._pending = np.zeros((0,), dtype=np.float32)
