# coding=utf-8

from .pcm import (
    FRAME_SAMPLES,
    SAMPLE_RATE,
    FrameEncoder,
    decode_pcm16le,
    encode_pcm16le,
    float_to_pcm16,
    pcm16_to_float,
)

__all__ = [
    "FRAME_SAMPLES",
    "SAMPLE_RATE",
    "FrameEncoder",
    "decode_pcm16le",
    "encode_pcm16le",
    "float_to_pcm16",
    "pcm16_to_float",
]
