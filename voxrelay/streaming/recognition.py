# coding=utf-8
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Optional, Tuple

from voxrelay.errors import InvalidTransition, RecognitionError
from voxrelay.services.registry import ServiceCredentials
from voxrelay.streaming.transcript_log import TranscriptEvent

logger = logging.getLogger(__name__)
_STREAM_IDS = itertools.count(1)


def _normalize_code(raw: Any) -> str:
    return str(raw or "").strip()


@dataclass(frozen=True)
class LanguageConfig:
    primary: str = "en-US"
    alternatives: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        primary = _normalize_code(self.primary)
        if not primary:
            raise ValueError("primary language code is empty")
        alternatives = tuple(
            code for code in dict.fromkeys(_normalize_code(x) for x in (self.alternatives or ())) if code and code != primary
        )
        object.__setattr__(self, "primary", primary)
        object.__setattr__(self, "alternatives", alternatives)

    @classmethod
    def build(cls, primary: str, alternatives: Optional[Iterable[str]] = None) -> "LanguageConfig":
        return cls(primary=primary, alternatives=tuple(alternatives or ()))

    def codes(self) -> Tuple[str, ...]:
        return (self.primary,) + self.alternatives


class StreamState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class RecognitionEvent:
    kind: str
    transcript: Optional[TranscriptEvent] = None
    error: Optional[RecognitionError] = None

    @classmethod
    def result(cls, text: str, is_final: bool, language_code: Optional[str] = None) -> "RecognitionEvent":
        return cls(kind="result", transcript=TranscriptEvent(text=text, is_final=bool(is_final), language_code=language_code))

    @classmethod
    def failure(cls, error: RecognitionError) -> "RecognitionEvent":
        return cls(kind="error", error=error)

    @classmethod
    def end(cls) -> "RecognitionEvent":
        return cls(kind="end")


class RecognitionConnection(ABC):
    """One live upstream recognition stream."""

    @abstractmethod
    async def send_audio(self, frame: bytes) -> None:
        ...

    @abstractmethod
    async def finish(self) -> None:
        """Signal end of audio; pending results are still delivered."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[RecognitionEvent]:
        """Upstream events in arrival order, terminated by an ``end`` event."""


class RecognitionBackend(ABC):
    name = "recognition"
    credential_service = ""

    @abstractmethod
    async def connect(self, language_config: LanguageConfig, credentials: ServiceCredentials) -> RecognitionConnection:
        ...

    async def verify(self, key: str) -> None:
        """Raise ConfigurationError when ``key`` is rejected."""


class RecognitionStream:
    """
    Lifecycle wrapper around one upstream connection.

    idle -> starting -> streaming -> draining -> closed
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        language_config: LanguageConfig,
        credentials: ServiceCredentials,
        stream_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.language_config = language_config
        self.credentials = credentials
        self.stream_id = stream_id or f"stream-{next(_STREAM_IDS)}"
        self._clock = clock
        self.created_at = clock()
        self.state = StreamState.IDLE
        self.frames_written = 0
        self._conn: Optional[RecognitionConnection] = None
        self._ended = asyncio.Event()
        self._ending = False

    @property
    def writable(self) -> bool:
        return self.state == StreamState.STREAMING

    @property
    def destroyed(self) -> bool:
        return self.state == StreamState.CLOSED

    def age(self) -> float:
        return max(0.0, self._clock() - self.created_at)

    def _transition(self, allowed: Tuple[StreamState, ...], target: StreamState, action: str) -> None:
        if self.state not in allowed:
            raise InvalidTransition("recognition stream", self.state, action)
        self.state = target

    def _mark_closed(self) -> None:
        self.state = StreamState.CLOSED
        self._ended.set()

    async def open(self) -> None:
        self._transition((StreamState.IDLE,), StreamState.STARTING, "open")
        try:
            conn = await self.backend.connect(self.language_config, self.credentials)
        except BaseException:
            self._mark_closed()
            raise
        self._conn = conn
        if self.state != StreamState.STARTING:
            # ended while the upstream handshake was in flight
            with suppress(Exception):
                await conn.close()
            self._mark_closed()
            return
        self.created_at = self._clock()
        self.state = StreamState.STREAMING

    async def write(self, frame: bytes) -> None:
        if not self.writable or self._conn is None:
            raise InvalidTransition("recognition stream", self.state, "write to")
        await self._conn.send_audio(frame)
        self.frames_written += 1

    def begin_drain(self) -> None:
        self._transition((StreamState.STREAMING,), StreamState.DRAINING, "drain")

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        if self._conn is None:
            raise InvalidTransition("recognition stream", self.state, "read from")
        try:
            async for event in self._conn.events():
                yield event
                if event.kind == "end":
                    break
        finally:
            self._mark_closed()

    async def end(self, drain_timeout_sec: float = 2.0) -> None:
        """
        Stop accepting audio, let upstream flush pending results, then close.
        Safe to call more than once.
        """
        if self.state == StreamState.CLOSED:
            return
        if self.state in (StreamState.IDLE, StreamState.STARTING) or self._conn is None:
            self.state = StreamState.CLOSED
            self._ended.set()
            return
        if self._ending:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._ended.wait(), timeout=max(0.0, float(drain_timeout_sec)))
            return
        self._ending = True
        if self.state == StreamState.STREAMING:
            self.begin_drain()
        try:
            await self._conn.finish()
        except Exception as e:
            logger.warning("recognition stream finish failed stream=%s err=%s", self.stream_id, e)
        try:
            await asyncio.wait_for(self._ended.wait(), timeout=max(0.0, float(drain_timeout_sec)))
        except asyncio.TimeoutError:
            logger.info("recognition stream drain timed out stream=%s", self.stream_id)
        finally:
            with suppress(Exception):
                await self._conn.close()
            self._mark_closed()

    def describe(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "state": self.state.value,
            "languages": list(self.language_config.codes()),
            "age_sec": round(self.age(), 3),
            "frames_written": int(self.frames_written),
        }
