# coding=utf-8

from .channel import TransportChannel, relay_url
from .recording import RecordingClient

__all__ = [
    "RecordingClient",
    "TransportChannel",
    "relay_url",
]
