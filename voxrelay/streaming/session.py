# coding=utf-8
"""
Per-connection recognition session.

One StreamSession owns the upstream recognition stream of one client: it
routes audio frames to the single writable stream, relays transcripts,
dispatches translations of final sentences and rotates the upstream stream
before the service's duration limit cuts it.
"""
from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Tuple

from voxrelay.errors import (
    FatalUpstreamError,
    InvalidTransition,
    RecognitionError,
    RelayError,
    SynthesisError,
)
from voxrelay.services.registry import ServiceCredentials, ServiceRegistry
from voxrelay.streaming.context_buffer import ContextBuffer
from voxrelay.streaming.recognition import LanguageConfig, RecognitionBackend, RecognitionStream
from voxrelay.streaming.recreation_policy import RecreationPolicy
from voxrelay.streaming.retry import RecoveryBudget
from voxrelay.streaming.session_policy import DURATION_LIMIT_REASON, SessionPolicy
from voxrelay.streaming.transcript_log import TranscriptEvent, TranscriptLog

if TYPE_CHECKING:
    from voxrelay.synthesis.tts import SpeechSynthesisBridge
    from voxrelay.translation.dispatcher import TranslationDispatcher

logger = logging.getLogger(__name__)
_SESSION_IDS = itertools.count(1)

Emitter = Callable[[Dict[str, Any]], Awaitable[None]]

STOP_REASON_CLIENT = "stopped by client"
STOP_REASON_DISCONNECT = "client disconnected"
STOP_REASON_ERROR = "recognition error"


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"


@dataclass(frozen=True)
class SessionSettings:
    source_language: str = "en-US"
    target_language: str = "ja-JP"
    alternative_languages: Tuple[str, ...] = field(default_factory=tuple)
    translation_provider: str = "openai"
    tts_enabled: bool = False
    instruction_template: Optional[str] = None

    def language_config(self) -> LanguageConfig:
        return LanguageConfig.build(self.source_language, self.alternative_languages)

    def swapped(self) -> "SessionSettings":
        return replace(self, source_language=self.target_language, target_language=self.source_language)


class StreamSession:
    def __init__(
        self,
        emit: Emitter,
        backend: RecognitionBackend,
        registry: ServiceRegistry,
        dispatcher: Optional["TranslationDispatcher"] = None,
        synthesizer: Optional["SpeechSynthesisBridge"] = None,
        settings: Optional[SessionSettings] = None,
        recreation_policy: Optional[RecreationPolicy] = None,
        session_policy: Optional[SessionPolicy] = None,
        context_max_chars: int = 2000,
        max_consecutive_recoveries: int = 3,
        drain_timeout_sec: float = 2.0,
        surface_synthesis_errors: bool = False,
        peer: str = "unknown",
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send = emit
        self.backend = backend
        self.registry = registry
        self.dispatcher = dispatcher
        self.synthesizer = synthesizer
        self.settings = settings or SessionSettings()
        self.recreation_policy = recreation_policy or RecreationPolicy()
        self.session_policy = session_policy or SessionPolicy()
        self.drain_timeout_sec = max(0.05, float(drain_timeout_sec))
        self.surface_synthesis_errors = bool(surface_synthesis_errors)
        self.peer = peer
        self.session_id = session_id or f"session-{next(_SESSION_IDS)}"
        self._clock = clock

        self.state = SessionState.IDLE
        self.closed = False
        self.context = ContextBuffer(max_chars=context_max_chars)
        self.transcript = TranscriptLog()
        self.session_started_at: Optional[float] = None
        self._active: Optional[RecognitionStream] = None
        self._draining: Optional[RecognitionStream] = None
        self._pumps: Dict[str, asyncio.Task] = {}
        self._duration_task: Optional[asyncio.Task] = None
        self._cap_timer_task: Optional[asyncio.Task] = None
        self._handoff_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._recovery = RecoveryBudget(max_consecutive_recoveries)
        self._last_warning_slot: Optional[int] = None
        self.stats = SimpleNamespace(
            frames_in=0,
            frames_forwarded=0,
            frames_dropped=0,
            write_errors=0,
            interims=0,
            finals=0,
            translations=0,
            streams_opened=0,
            recreations=0,
            last_error="",
        )

    @property
    def active_stream(self) -> Optional[RecognitionStream]:
        return self._active

    @property
    def draining_stream(self) -> Optional[RecognitionStream]:
        return self._draining

    def writable_streams(self) -> List[RecognitionStream]:
        return [s for s in (self._active, self._draining) if s is not None and s.writable]

    # -- plumbing -----------------------------------------------------------

    async def _emit(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            await self._send(payload)
        except Exception as e:
            logger.warning("session send failed peer=%s type=%s err=%s", self.peer, payload.get("type"), e)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("session background task failed peer=%s err=%r", self.peer, exc)

    async def _open_stream(self, credentials: ServiceCredentials) -> RecognitionStream:
        stream = RecognitionStream(self.backend, self.settings.language_config(), credentials, clock=self._clock)
        try:
            await stream.open()
        except RelayError:
            raise
        except Exception as e:
            raise FatalUpstreamError(f"recognition stream failed to open: {e!r}") from e
        self.stats.streams_opened += 1
        if not stream.destroyed:
            self._pumps[stream.stream_id] = asyncio.create_task(self._pump(stream))
        return stream

    # -- lifecycle ----------------------------------------------------------

    async def start(self, settings: Optional[SessionSettings] = None, keep_clock: bool = False) -> RecognitionStream:
        if self.closed:
            raise InvalidTransition("session", "closed", "start")
        if self.state != SessionState.IDLE:
            raise InvalidTransition("session", self.state, "start")
        if settings is not None:
            self.settings = settings
        credentials = self.registry.snapshot()
        if self.backend.credential_service:
            credentials.require(self.backend.credential_service)

        self.state = SessionState.STARTING
        try:
            stream = await self._open_stream(credentials)
        except BaseException:
            if self.state == SessionState.STARTING:
                self.state = SessionState.IDLE
            raise
        if self.state != SessionState.STARTING or stream.destroyed:
            # stopped while the upstream handshake was in flight
            await stream.end(self.drain_timeout_sec)
            return stream

        self._active = stream
        self._recovery.reset()
        if not keep_clock or self.session_started_at is None:
            self.session_started_at = self._clock()
            self._last_warning_slot = None
        self.state = SessionState.ACTIVE
        self._duration_task = asyncio.create_task(self._run_duration_policy())
        self._arm_cap_timer(stream)
        logger.info(
            "session started peer=%s stream=%s languages=%s target=%s provider=%s",
            self.peer,
            stream.stream_id,
            ",".join(stream.language_config.codes()),
            self.settings.target_language,
            self.settings.translation_provider,
        )
        await self._emit(
            {
                "type": "started",
                "stream_id": stream.stream_id,
                "source_language": self.settings.source_language,
                "target_language": self.settings.target_language,
                "languages": list(stream.language_config.codes()),
                "translation_provider": self.settings.translation_provider,
            }
        )
        return stream

    def _detach(self) -> List[RecognitionStream]:
        """
        Synchronous half of stop: no frame is accepted and no timer fires
        once this returns. The returned streams still need to be ended.
        """
        self.state = SessionState.IDLE
        current = asyncio.current_task()
        for task in (self._duration_task, self._cap_timer_task, self._handoff_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._duration_task = None
        self._cap_timer_task = None
        self._handoff_task = None
        streams = [s for s in (self._active, self._draining) if s is not None]
        for stream in streams:
            if stream.writable:
                stream.begin_drain()
        self._active = None
        self._draining = None
        return streams

    async def _end_streams(self, streams: List[RecognitionStream]) -> None:
        for stream in streams:
            try:
                await stream.end(self.drain_timeout_sec)
            except Exception as e:
                logger.warning("ending recognition stream failed peer=%s stream=%s err=%s", self.peer, stream.stream_id, e)

    async def _complete_stop(self, streams: List[RecognitionStream], reason: str, notify: bool = True) -> None:
        await self._end_streams(streams)
        flushed = self.transcript.flush_interim()
        if flushed is not None:
            self.context.append(flushed.text)
        logger.info(
            "session stopped peer=%s reason=%s frames_in=%d forwarded=%d dropped=%d finals=%d recreations=%d",
            self.peer,
            reason,
            self.stats.frames_in,
            self.stats.frames_forwarded,
            self.stats.frames_dropped,
            self.stats.finals,
            self.stats.recreations,
        )
        if notify:
            await self._emit({"type": "recording_stopped", "reason": reason})

    async def stop(self, reason: str = STOP_REASON_CLIENT) -> bool:
        """Idempotent; returns False when the session was already idle."""
        if self.state == SessionState.IDLE:
            return False
        streams = self._detach()
        await self._complete_stop(streams, reason)
        return True

    async def release(self) -> None:
        was_active = self.state != SessionState.IDLE
        self.closed = True
        await self.stop(STOP_REASON_DISCONNECT)
        for task in list(self._pumps.values()):
            if not task.done():
                task.cancel()
        if was_active or self._background:
            logger.info(
                "session released peer=%s pending_tasks=%d finals=%d translations=%d",
                self.peer,
                len(self._background),
                self.stats.finals,
                self.stats.translations,
            )

    async def apply_settings(self, **changes: Any) -> bool:
        """
        Update session settings. A language change while streaming ends the
        current stream and starts a fresh one; the session clock keeps running.
        Returns True when the stream was restarted.
        """
        if "alternative_languages" in changes:
            changes["alternative_languages"] = tuple(changes["alternative_languages"] or ())
        previous = self.settings
        self.settings = replace(previous, **changes)
        if self.settings.language_config() == previous.language_config():
            return False
        if self.state != SessionState.ACTIVE:
            return False
        await self._restart()
        return True

    async def swap_direction(self) -> bool:
        swapped = self.settings.swapped()
        return await self.apply_settings(
            source_language=swapped.source_language,
            target_language=swapped.target_language,
        )

    async def _restart(self) -> None:
        streams = self._detach()
        await self._end_streams(streams)
        flushed = self.transcript.flush_interim()
        if flushed is not None:
            self.context.append(flushed.text)
        try:
            await self.start(keep_clock=True)
        except RelayError as e:
            self.stats.last_error = str(e)
            logger.warning("session restart failed peer=%s err=%s", self.peer, e)
            await self._emit({"type": "error", "message": f"restart failed: {e}"})
            await self._emit({"type": "recording_stopped", "reason": STOP_REASON_ERROR})

    # -- audio --------------------------------------------------------------

    async def feed_audio(self, frame: bytes) -> bool:
        self.stats.frames_in += 1
        stream = self._active
        if self.state != SessionState.ACTIVE or stream is None or not stream.writable:
            self.stats.frames_dropped += 1
            return False
        try:
            await stream.write(frame)
        except Exception as e:
            self.stats.write_errors += 1
            self.stats.frames_dropped += 1
            if self.stats.write_errors <= 3 or self.stats.write_errors % 50 == 0:
                logger.warning(
                    "audio write failed peer=%s stream=%s errors=%d err=%s",
                    self.peer,
                    stream.stream_id,
                    self.stats.write_errors,
                    e,
                )
            return False
        self.stats.frames_forwarded += 1
        return True

    # -- upstream events ----------------------------------------------------

    async def _pump(self, stream: RecognitionStream) -> None:
        try:
            async for event in stream.events():
                if event.kind == "result" and event.transcript is not None:
                    await self._on_transcript(stream, event.transcript)
                elif event.kind == "error" and event.error is not None:
                    await self._on_stream_error(stream, event.error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("recognition reader failed peer=%s stream=%s err=%s", self.peer, stream.stream_id, e)
            await self._on_stream_error(stream, FatalUpstreamError(f"recognition stream failed: {e}"))
        finally:
            self._pumps.pop(stream.stream_id, None)
            if self._draining is stream:
                self._draining = None
        if stream is self._active and self.state == SessionState.ACTIVE:
            logger.info("recognition stream ended unexpectedly peer=%s stream=%s", self.peer, stream.stream_id)
            await self._recover(stream, "stream ended")

    async def _on_transcript(self, stream: RecognitionStream, event: TranscriptEvent) -> None:
        text = str(event.text or "").strip()
        if not text:
            return
        if not event.is_final:
            self.stats.interims += 1
            self.transcript.set_interim(text)
            await self._emit(event.to_payload())
            return

        self.stats.finals += 1
        self._recovery.reset()
        self.transcript.append_final(text)
        await self._emit(TranscriptEvent(text=text, is_final=True, language_code=event.language_code).to_payload())
        context_before = self.context.sentences()
        self.context.append(text)
        self._dispatch_translation(text, context_before)

        if stream is self._active and self.state == SessionState.ACTIVE:
            decision = self.recreation_policy.on_final(stream.age())
            if decision.should_recreate:
                self._request_handoff(decision.reason, decision.delay_sec)

    async def _on_stream_error(self, stream: RecognitionStream, error: RecognitionError) -> None:
        self.stats.last_error = str(error)
        if stream is not self._active or self.state != SessionState.ACTIVE:
            logger.info("ignoring error from retired stream peer=%s stream=%s err=%s", self.peer, stream.stream_id, error)
            return
        if error.transient:
            logger.info("transient recognition error peer=%s stream=%s err=%s", self.peer, stream.stream_id, error)
            await self._recover(stream, str(error))
            return
        logger.warning("recognition error peer=%s stream=%s err=%s", self.peer, stream.stream_id, error)
        await self._fail(error)

    async def _recover(self, stream: RecognitionStream, cause: str) -> None:
        if stream is not self._active or self.state != SessionState.ACTIVE:
            return
        if self._handoff_task is not None and not self._handoff_task.done():
            return
        if not self._recovery.try_acquire():
            await self._fail(FatalUpstreamError(f"recognition stream keeps failing: {cause}"))
            return
        self._request_handoff("recover", 0.0)

    async def _fail(self, error: RelayError) -> None:
        streams = self._detach()
        await self._emit({"type": "error", "message": f"Speech recognition error: {error}"})
        self._spawn(self._complete_stop(streams, STOP_REASON_ERROR))

    # -- recreation ---------------------------------------------------------

    def _arm_cap_timer(self, stream: RecognitionStream) -> None:
        task = self._cap_timer_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._cap_timer_task = asyncio.create_task(self._run_cap_timer(stream))

    async def _run_cap_timer(self, stream: RecognitionStream) -> None:
        while True:
            await asyncio.sleep(self.recreation_policy.time_until_hard_cap(stream.age()))
            if stream is not self._active or self.state != SessionState.ACTIVE:
                return
            decision = self.recreation_policy.on_timer(stream.age())
            if decision.should_recreate:
                self._request_handoff(decision.reason, 0.0)
                return

    def _request_handoff(self, reason: str, delay_sec: float = 0.0) -> bool:
        if self.state != SessionState.ACTIVE:
            return False
        if self._handoff_task is not None and not self._handoff_task.done():
            return False
        self._handoff_task = asyncio.create_task(self._handoff(reason, delay_sec))
        self._handoff_task.add_done_callback(self._on_background_done)
        return True

    async def _handoff(self, reason: str, delay_sec: float) -> None:
        if delay_sec > 0:
            await asyncio.sleep(delay_sec)
        old = self._active
        if old is None or self.state != SessionState.ACTIVE:
            return
        try:
            new = await self._open_stream(self.registry.snapshot())
        except RelayError as e:
            self.stats.last_error = str(e)
            if reason != "recover" and old.writable:
                logger.warning("stream recreation failed, keeping current stream peer=%s err=%s", self.peer, e)
                return
            logger.warning("stream recovery failed peer=%s err=%s", self.peer, e)
            await self._fail(e)
            return
        if self.state != SessionState.ACTIVE or self._active is not old:
            await new.end(self.drain_timeout_sec)
            return

        # from here on the new stream is the only frame destination
        if old.writable:
            old.begin_drain()
        self._active = new
        self._draining = None if old.destroyed else old
        self.stats.recreations += 1
        self._arm_cap_timer(new)
        logger.info(
            "stream handoff peer=%s reason=%s old=%s new=%s old_age=%.1fs",
            self.peer,
            reason,
            old.stream_id,
            new.stream_id,
            old.age(),
        )
        await old.end(self.drain_timeout_sec)

    async def _run_duration_policy(self) -> None:
        while self.state == SessionState.ACTIVE and self.session_started_at is not None:
            decision = self.session_policy.evaluate(self._clock() - self.session_started_at, self._last_warning_slot)
            if decision.expired:
                logger.info("session duration limit reached peer=%s", self.peer)
                await self._complete_stop(self._detach(), DURATION_LIMIT_REASON)
                return
            if decision.warn:
                self._last_warning_slot = decision.warning_slot
                await self._emit({"type": "time_remaining", "minutes": decision.minutes_remaining})
            await asyncio.sleep(decision.next_check_sec)

    # -- translation & synthesis --------------------------------------------

    def _dispatch_translation(self, text: str, context: List[str]) -> None:
        if self.dispatcher is None:
            return
        self._spawn(self._translate_and_relay(text, context, self.settings, self.registry.snapshot()))

    async def _translate_and_relay(
        self,
        text: str,
        context: List[str],
        settings: SessionSettings,
        credentials: ServiceCredentials,
    ) -> None:
        try:
            result = await self.dispatcher.translate(
                text,
                context,
                settings.source_language,
                settings.target_language,
                settings.translation_provider,
                instruction_template=settings.instruction_template,
                credentials=credentials,
            )
        except RelayError as e:
            self.stats.last_error = f"translate failed: {e}"
            logger.warning("translation failed peer=%s provider=%s err=%s", self.peer, settings.translation_provider, e)
            await self._emit({"type": "error", "message": f"Translation error: {e}"})
            return
        if not result.translated:
            return
        self.transcript.record_translation(result)
        self.stats.translations += 1
        await self._emit(result.to_payload())

        if not settings.tts_enabled or self.synthesizer is None or self.closed:
            return
        try:
            audio = await self.synthesizer.synthesize(result.translated, settings.target_language, credentials)
        except SynthesisError as e:
            logger.warning("speech synthesis failed peer=%s err=%s", self.peer, e)
            if self.surface_synthesis_errors:
                await self._emit({"type": "error", "message": f"Speech synthesis error: {e}"})
            return
        await self._emit(
            {
                "type": "tts_audio",
                "original": text,
                "audio": base64.b64encode(audio).decode("ascii"),
                "mime_type": self.synthesizer.mime_type,
            }
        )

    async def wait_idle(self, timeout_sec: float = 5.0) -> None:
        """Wait for pending translation/synthesis tasks (used on shutdown and in tests)."""
        pending = [t for t in self._background if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=max(0.0, float(timeout_sec)))

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "active_stream": self._active.describe() if self._active is not None else None,
            "draining_stream": self._draining.describe() if self._draining is not None else None,
            "context_sentences": len(self.context),
            "frames_in": self.stats.frames_in,
            "frames_forwarded": self.stats.frames_forwarded,
            "frames_dropped": self.stats.frames_dropped,
            "finals": self.stats.finals,
            "recreations": self.stats.recreations,
        }
