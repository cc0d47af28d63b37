import asyncio
import base64

import pytest

from fakes import FakeBackend, FakeSynthesizer, FakeTranslator, wait_until
from voxrelay.errors import (
    ConfigurationError,
    FatalUpstreamError,
    InvalidTransition,
    RateLimitError,
    SynthesisError,
    TransientUpstreamError,
)
from voxrelay.services.registry import ServiceRegistry
from voxrelay.streaming.recognition import RecognitionEvent
from voxrelay.streaming.recreation_policy import RecreationPolicy
from voxrelay.streaming.session import SessionSettings, SessionState, StreamSession
from voxrelay.streaming.session_policy import SessionPolicy
from voxrelay.translation.dispatcher import TranslationDispatcher

FRAME_A = b"\x01\x00" * 4
FRAME_B = b"\x02\x00" * 4
FRAME_C = b"\x03\x00" * 4


def _kinds(events):
    return [e["type"] for e in events]


def _of(events, kind):
    return [e for e in events if e["type"] == kind]


def _session(script=None, keys=None, translator=None, backend=None, registry=None, **kwargs):
    events = []

    async def emit(payload):
        events.append(payload)

    async def no_sleep(sec):
        return None

    if registry is None:
        registry = ServiceRegistry(keys if keys is not None else {"deepgram": "dg", "openai": "sk"})
    translator = translator or FakeTranslator()
    dispatcher = TranslationDispatcher([translator], registry, sleep=no_sleep)
    backend = backend or FakeBackend(script=script)
    kwargs.setdefault("drain_timeout_sec", 1.0)
    session = StreamSession(emit, backend, registry, dispatcher=dispatcher, **kwargs)
    return session, backend, translator, events


def test_final_is_relayed_before_its_translation():
    script = {
        FRAME_A: [
            RecognitionEvent.result("hel", False),
            RecognitionEvent.result("Hello there.", True),
        ]
    }

    async def scenario():
        session, backend, translator, events = _session(script)
        await session.start()
        assert await session.feed_audio(FRAME_A) is True
        await wait_until(lambda: _of(events, "translation"))
        await session.stop()
        await session.wait_idle()
        await session.release()
        return session, translator, events

    session, translator, events = asyncio.run(scenario())
    assert _kinds(events) == ["started", "transcription", "transcription", "translation", "recording_stopped"]
    assert events[1] == {"type": "transcription", "text": "hel", "is_final": False}
    assert events[2]["is_final"] is True
    assert events[3]["original"] == "Hello there."
    assert events[3]["translated"] == "[ja-JP] Hello there."
    assert events[3]["from_lang"] == "en-US"
    assert translator.calls[0]["context"] == ""
    assert session.transcript.final_text() == "Hello there."
    assert session.context.sentences() == ["Hello there."]


def test_translation_context_is_prior_sentences():
    script = {
        FRAME_A: [RecognitionEvent.result("Hi Anna.", True)],
        FRAME_B: [RecognitionEvent.result("How are you?", True)],
    }

    async def scenario():
        session, _, translator, events = _session(script)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: len(_of(events, "translation")) == 1)
        await session.feed_audio(FRAME_B)
        await wait_until(lambda: len(_of(events, "translation")) == 2)
        await session.release()
        return translator

    translator = asyncio.run(scenario())
    assert translator.calls[1]["text"] == "How are you?"
    assert translator.calls[1]["context"] == "Hi Anna."


def test_empty_transcripts_are_skipped():
    script = {FRAME_A: [RecognitionEvent.result("   ", True), RecognitionEvent.result("ok.", True)]}

    async def scenario():
        session, _, translator, events = _session(script)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "translation"))
        await session.release()
        return session, translator, events

    session, translator, events = asyncio.run(scenario())
    assert [e["text"] for e in _of(events, "transcription")] == ["ok."]
    assert len(translator.calls) == 1
    assert session.stats.finals == 1


def test_stop_is_idempotent_and_flushes_interim():
    script = {FRAME_A: [RecognitionEvent.result("unfinished thought", False)]}

    async def scenario():
        session, _, translator, events = _session(script)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "transcription"))
        first = await session.stop()
        second = await session.stop()
        await session.release()
        return session, translator, events, first, second

    session, translator, events, first, second = asyncio.run(scenario())
    assert first is True
    assert second is False
    stops = _of(events, "recording_stopped")
    assert stops == [{"type": "recording_stopped", "reason": "stopped by client"}]
    assert session.transcript.final_text() == "unfinished thought"
    assert session.context.sentences() == ["unfinished thought"]
    assert translator.calls == []


def test_frames_dropped_while_idle():
    async def scenario():
        session, backend, _, events = _session()
        ok = await session.feed_audio(FRAME_A)
        await session.release()
        return session, backend, ok

    session, backend, ok = asyncio.run(scenario())
    assert ok is False
    assert session.stats.frames_dropped == 1
    assert backend.connections == []


def test_start_twice_is_invalid():
    async def scenario():
        session, _, _, _ = _session()
        await session.start()
        with pytest.raises(InvalidTransition):
            await session.start()
        await session.release()

    asyncio.run(scenario())


def test_missing_recognition_key_fails_start():
    async def scenario():
        session, backend, _, events = _session(keys={"openai": "sk"})
        with pytest.raises(ConfigurationError, match="deepgram API key"):
            await session.start()
        return session, backend, events

    session, backend, events = asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert backend.connections == []
    assert events == []


def test_handoff_after_final_routes_each_frame_to_one_stream():
    script = {FRAME_A: [RecognitionEvent.result("First sentence.", True)]}

    async def scenario():
        session, backend, _, events = _session(
            script,
            recreation_policy=RecreationPolicy(mode="after_final"),
        )
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: session.stats.recreations == 1 and session.draining_stream is None)
        await session.feed_audio(FRAME_B)
        await session.feed_audio(FRAME_C)
        assert len(session.writable_streams()) == 1
        await session.stop()
        await session.release()
        return session, backend, events

    session, backend, events = asyncio.run(scenario())
    assert len(backend.connections) == 2
    assert backend.connections[0].sent == [FRAME_A]
    assert backend.connections[1].sent == [FRAME_B, FRAME_C]
    assert _of(events, "error") == []
    assert len(_of(events, "started")) == 1
    assert session.stats.frames_forwarded == 3


def test_hard_cap_timer_recreates_stream():
    async def scenario():
        session, backend, _, events = _session(
            recreation_policy=RecreationPolicy(mode="time_cap", max_stream_sec=0.05, soft_cap_sec=0.05),
        )
        await session.start()
        await wait_until(lambda: session.stats.recreations >= 1)
        await session.stop()
        await session.release()
        return session, backend, events

    session, backend, events = asyncio.run(scenario())
    assert len(backend.connections) >= 2
    assert backend.connections[0].finished is True
    assert _of(events, "error") == []
    assert len(_of(events, "recording_stopped")) == 1


def test_transient_error_recovers_once():
    async def scenario():
        session, backend, _, events = _session()
        await session.start()
        backend.connections[0].push(RecognitionEvent.failure(TransientUpstreamError("idle timeout (NET-0001)")))
        await wait_until(lambda: session.stats.recreations == 1 and session.draining_stream is None)
        await asyncio.sleep(0.05)
        state = session.state
        await session.feed_audio(FRAME_A)
        await session.release()
        return session, backend, events, state

    session, backend, events, state = asyncio.run(scenario())
    assert state == SessionState.ACTIVE
    assert len(backend.connections) == 2
    assert backend.connections[1].sent == [FRAME_A]
    assert _of(events, "error") == []


def test_recovery_budget_exhaustion_stops_session():
    async def scenario():
        session, backend, _, events = _session(max_consecutive_recoveries=1)
        await session.start()
        backend.connections[0].push(RecognitionEvent.failure(TransientUpstreamError("timeout")))
        await wait_until(lambda: session.stats.recreations == 1 and session.draining_stream is None)
        await asyncio.sleep(0.05)
        backend.connections[1].push(RecognitionEvent.failure(TransientUpstreamError("timeout")))
        await wait_until(lambda: _of(events, "recording_stopped"))
        await session.release()
        return session, backend, events

    session, backend, events = asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert len(backend.connections) == 2
    errors = _of(events, "error")
    assert len(errors) == 1
    assert errors[0]["message"].startswith("Speech recognition error:")
    assert _of(events, "recording_stopped") == [{"type": "recording_stopped", "reason": "recognition error"}]


def test_fatal_error_stops_with_error_then_stopped():
    async def scenario():
        session, backend, _, events = _session()
        await session.start()
        backend.connections[0].push(RecognitionEvent.failure(FatalUpstreamError("closed with code 1008")))
        await wait_until(lambda: _of(events, "recording_stopped"))
        ok = await session.feed_audio(FRAME_A)
        again = await session.stop()
        await session.release()
        return session, backend, events, ok, again

    session, backend, events, ok, again = asyncio.run(scenario())
    assert _kinds(events) == ["started", "error", "recording_stopped"]
    assert "closed with code 1008" in events[1]["message"]
    assert events[2]["reason"] == "recognition error"
    assert ok is False
    assert again is False
    assert len(backend.connections) == 1


def test_unexpected_stream_end_is_recovered():
    async def scenario():
        session, backend, _, events = _session()
        await session.start()
        backend.connections[0].push(RecognitionEvent.end())
        await wait_until(lambda: len(backend.connections) == 2 and session.active_stream is not None
                         and session.active_stream.writable and session.stats.recreations == 1)
        await session.release()
        return events

    events = asyncio.run(scenario())
    assert _of(events, "error") == []


def test_recovery_open_failure_stops_session():
    async def scenario():
        session, backend, _, events = _session()
        await session.start()
        backend.connect_errors.append(RuntimeError("upstream closed during handshake"))
        backend.connections[0].push(RecognitionEvent.failure(TransientUpstreamError("idle timeout (NET-0001)")))
        await wait_until(lambda: _of(events, "recording_stopped"))
        ok = await session.feed_audio(FRAME_A)
        await session.release()
        return session, events, ok

    session, events, ok = asyncio.run(scenario())
    assert session.state == SessionState.IDLE
    assert _kinds(events) == ["started", "error", "recording_stopped"]
    assert "upstream closed during handshake" in events[1]["message"]
    assert events[2]["reason"] == "recognition error"
    assert ok is False


def test_unexpected_open_failure_on_start_is_a_recognition_error():
    async def scenario():
        backend = FakeBackend(connect_errors=[RuntimeError("bad handshake")])
        session, _, _, events = _session(backend=backend)
        with pytest.raises(FatalUpstreamError, match="bad handshake"):
            await session.start()
        state = session.state
        await session.release()
        return state, events

    state, events = asyncio.run(scenario())
    assert state == SessionState.IDLE
    assert _of(events, "started") == []


def test_error_from_draining_stream_is_ignored():
    script = {FRAME_A: [RecognitionEvent.result("Done.", True)]}

    async def scenario():
        backend = FakeBackend(script=script, finish_ends=False)
        session, _, _, events = _session(
            backend=backend,
            recreation_policy=RecreationPolicy(mode="after_final"),
            drain_timeout_sec=2.0,
        )
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: session.stats.recreations == 1)
        old = backend.connections[0]
        old.push(RecognitionEvent.failure(FatalUpstreamError("late failure")))
        old.push(RecognitionEvent.result("Trailing words.", True))
        old.push(RecognitionEvent.end())
        await wait_until(lambda: session.draining_stream is None)
        state = session.state
        backend.connections[1].finish_ends = True
        await session.stop()
        await session.release()
        return session, events, state

    session, events, state = asyncio.run(scenario())
    assert state == SessionState.ACTIVE
    assert _of(events, "error") == []
    finals = [e["text"] for e in _of(events, "transcription") if e["is_final"]]
    assert finals == ["Done.", "Trailing words."]
    assert session.stats.last_error == "late failure"


def test_duration_limit_warns_then_stops():
    async def scenario():
        session, _, _, events = _session(
            session_policy=SessionPolicy(max_duration_sec=0.3, warning_threshold_sec=0.2, warning_interval_sec=1.0),
        )
        await session.start()
        await wait_until(lambda: _of(events, "recording_stopped"))
        await session.release()
        return session, events

    session, events = asyncio.run(scenario())
    assert _of(events, "time_remaining") == [{"type": "time_remaining", "minutes": 1}]
    assert _of(events, "recording_stopped") == [{"type": "recording_stopped", "reason": "duration limit reached"}]
    assert session.state == SessionState.IDLE


def test_language_change_restarts_stream_and_keeps_clock():
    async def scenario():
        session, backend, _, events = _session()
        await session.start()
        started_at = session.session_started_at
        restarted = await session.apply_settings(source_language="fr-FR", alternative_languages=["en-US"])
        same_clock = session.session_started_at == started_at
        unchanged = await session.apply_settings(translation_provider="openai")
        await session.release()
        return session, backend, events, restarted, same_clock, unchanged

    session, backend, events, restarted, same_clock, unchanged = asyncio.run(scenario())
    assert restarted is True
    assert unchanged is False
    assert same_clock is True
    started = _of(events, "started")
    assert len(started) == 2
    assert started[1]["source_language"] == "fr-FR"
    assert started[1]["languages"] == ["fr-FR", "en-US"]
    assert backend.language_configs[1].primary == "fr-FR"
    assert backend.connections[0].finished is True
    # release stops the restarted session silently
    assert _of(events, "recording_stopped") == []


def test_swap_direction_while_idle_only_updates_settings():
    async def scenario():
        session, backend, _, _ = _session(settings=SessionSettings(source_language="en-US", target_language="ko-KR"))
        restarted = await session.swap_direction()
        await session.release()
        return session, backend, restarted

    session, backend, restarted = asyncio.run(scenario())
    assert restarted is False
    assert session.settings.source_language == "ko-KR"
    assert session.settings.target_language == "en-US"
    assert backend.connections == []


def test_release_discards_late_emits():
    script = {FRAME_A: [RecognitionEvent.result("partial", False)]}

    async def scenario():
        session, _, _, events = _session(script)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "transcription"))
        before = list(events)
        await session.release()
        ok = await session.feed_audio(FRAME_A)
        with pytest.raises(InvalidTransition):
            await session.start()
        return session, events, before, ok

    session, events, before, ok = asyncio.run(scenario())
    assert events == before
    assert ok is False
    assert session.closed is True


def test_translation_failure_is_reported_and_session_continues():
    script = {FRAME_A: [RecognitionEvent.result("Hello.", True)]}

    async def scenario():
        translator = FakeTranslator(failures=[ConfigurationError("openai rejected the API key (HTTP 401)")])
        session, _, _, events = _session(script, translator=translator)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "error"))
        state = session.state
        await session.release()
        return events, state

    events, state = asyncio.run(scenario())
    assert state == SessionState.ACTIVE
    assert _of(events, "translation") == []
    assert _of(events, "error")[0]["message"].startswith("Translation error:")


def test_tts_audio_follows_translation():
    script = {FRAME_A: [RecognitionEvent.result("Good morning.", True)]}

    async def scenario():
        synth = FakeSynthesizer()
        session, _, _, events = _session(
            script,
            synthesizer=synth,
            settings=SessionSettings(tts_enabled=True),
        )
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "tts_audio"))
        await session.release()
        return synth, events

    synth, events = asyncio.run(scenario())
    kinds = _kinds(events)
    assert kinds.index("translation") < kinds.index("tts_audio")
    audio = _of(events, "tts_audio")[0]
    assert audio["original"] == "Good morning."
    assert audio["mime_type"] == "audio/mpeg"
    assert base64.b64decode(audio["audio"]) == b"ID3fake"
    assert synth.calls == [("[ja-JP] Good morning.", "ja-JP")]


@pytest.mark.parametrize("surface", [False, True])
def test_synthesis_errors_surface_only_when_enabled(surface):
    script = {FRAME_A: [RecognitionEvent.result("Good night.", True)]}

    async def scenario():
        synth = FakeSynthesizer(error=SynthesisError("quota exceeded"))
        session, _, _, events = _session(
            script,
            synthesizer=synth,
            settings=SessionSettings(tts_enabled=True),
            surface_synthesis_errors=surface,
        )
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: synth.calls)
        await session.wait_idle()
        await session.release()
        return events

    events = asyncio.run(scenario())
    errors = _of(events, "error")
    assert _of(events, "tts_audio") == []
    if surface:
        assert errors == [{"type": "error", "message": "Speech synthesis error: quota exceeded"}]
    else:
        assert errors == []


def test_empty_frame_is_forwarded_unchanged():
    async def scenario():
        session, backend, _, _ = _session()
        await session.start()
        ok_empty = await session.feed_audio(b"")
        ok_frame = await session.feed_audio(FRAME_A)
        await session.release()
        return session, backend, ok_empty, ok_frame

    session, backend, ok_empty, ok_frame = asyncio.run(scenario())
    assert ok_empty is True and ok_frame is True
    assert backend.connections[0].sent == [b"", FRAME_A]
    assert session.stats.frames_forwarded == 2


def test_rate_limited_translation_is_retried_without_error():
    script = {FRAME_A: [RecognitionEvent.result("Hello.", True)]}

    async def scenario():
        translator = FakeTranslator(failures=[RateLimitError("429")])
        session, _, _, events = _session(script, translator=translator)
        await session.start()
        await session.feed_audio(FRAME_A)
        await wait_until(lambda: _of(events, "translation"))
        await session.wait_idle()
        await session.release()
        return translator, events

    translator, events = asyncio.run(scenario())
    assert len(_of(events, "translation")) == 1
    assert _of(events, "error") == []
    assert len(translator.calls) == 2


def test_sessions_sharing_backend_and_registry_stay_isolated():
    script = {
        FRAME_A: [RecognitionEvent.result("Alpha.", True)],
        FRAME_B: [RecognitionEvent.result("Beta.", True)],
        FRAME_C: [RecognitionEvent.result("Gamma.", True)],
    }

    async def scenario():
        registry = ServiceRegistry({"deepgram": "dg", "openai": "sk"})
        backend = FakeBackend(script=script)
        one, _, t_one, events_one = _session(backend=backend, registry=registry)
        two, _, t_two, events_two = _session(backend=backend, registry=registry)
        await one.start()
        await two.start()
        await one.feed_audio(FRAME_A)
        await two.feed_audio(FRAME_B)
        await wait_until(lambda: _of(events_one, "translation") and _of(events_two, "translation"))
        await two.feed_audio(FRAME_C)
        await wait_until(lambda: len(_of(events_two, "translation")) == 2)
        await one.stop()
        two_state = two.state
        two_stopped = list(_of(events_two, "recording_stopped"))
        await one.release()
        await two.release()
        return one, two, backend, t_one, t_two, events_one, events_two, two_state, two_stopped

    one, two, backend, t_one, t_two, events_one, events_two, two_state, two_stopped = asyncio.run(scenario())
    assert backend.connections[0].sent == [FRAME_A]
    assert backend.connections[1].sent == [FRAME_B, FRAME_C]
    assert [e["text"] for e in _of(events_one, "transcription")] == ["Alpha."]
    assert [e["text"] for e in _of(events_two, "transcription")] == ["Beta.", "Gamma."]
    assert one.context.sentences() == ["Alpha."]
    assert two.context.sentences() == ["Beta.", "Gamma."]
    assert [c["text"] for c in t_one.calls] == ["Alpha."]
    assert t_two.calls[1]["context"] == "Beta."
    assert two_state == SessionState.ACTIVE
    assert two_stopped == []
    assert len(_of(events_one, "recording_stopped")) == 1
