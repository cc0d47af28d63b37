import asyncio

import pytest

from fakes import FakeBackend
from voxrelay.errors import InvalidTransition
from voxrelay.services.registry import ServiceCredentials
from voxrelay.streaming.recognition import LanguageConfig, RecognitionEvent, RecognitionStream, StreamState


def _creds():
    return ServiceCredentials(keys={"deepgram": "k"})


def test_language_config_dedupes_alternatives():
    cfg = LanguageConfig.build("en-US", ["ja-JP", "en-US", " ja-JP ", ""])
    assert cfg.codes() == ("en-US", "ja-JP")
    with pytest.raises(ValueError):
        LanguageConfig.build(" ")


def test_stream_lifecycle_and_write():
    async def scenario():
        backend = FakeBackend()
        stream = RecognitionStream(backend, LanguageConfig.build("en-US"), _creds())
        assert stream.state == StreamState.IDLE
        with pytest.raises(InvalidTransition):
            await stream.write(b"\x00\x00")
        await stream.open()
        assert stream.writable
        await stream.write(b"\x01\x00")
        assert backend.connections[0].sent == [b"\x01\x00"]

        events = []

        async def pump():
            async for ev in stream.events():
                events.append(ev.kind)

        task = asyncio.create_task(pump())
        await stream.end(drain_timeout_sec=1.0)
        await task
        assert stream.destroyed
        assert events == ["end"]
        assert backend.connections[0].finished is True
        with pytest.raises(InvalidTransition):
            await stream.write(b"\x00\x00")
        with pytest.raises(InvalidTransition):
            await stream.open()

    asyncio.run(scenario())


def test_draining_stream_delivers_pending_results():
    async def scenario():
        backend = FakeBackend(finish_ends=False)
        stream = RecognitionStream(backend, LanguageConfig.build("en-US"), _creds())
        await stream.open()
        seen = []

        async def pump():
            async for ev in stream.events():
                seen.append(ev)

        task = asyncio.create_task(pump())
        stream.begin_drain()
        assert stream.writable is False
        conn = backend.connections[0]
        conn.push(RecognitionEvent.result("late words", True))
        conn.push(RecognitionEvent.end())
        await stream.end(drain_timeout_sec=1.0)
        await task
        assert [e.kind for e in seen] == ["result", "end"]
        assert seen[0].transcript.text == "late words"

    asyncio.run(scenario())


def test_end_is_idempotent_and_closes_unopened_stream():
    async def scenario():
        stream = RecognitionStream(FakeBackend(), LanguageConfig.build("en-US"), _creds())
        await stream.end()
        await stream.end()
        assert stream.state == StreamState.CLOSED

    asyncio.run(scenario())


def test_open_failure_closes_stream():
    async def scenario():
        backend = FakeBackend(connect_errors=[OSError("refused")])
        stream = RecognitionStream(backend, LanguageConfig.build("en-US"), _creds())
        with pytest.raises(OSError):
            await stream.open()
        assert stream.destroyed

    asyncio.run(scenario())
