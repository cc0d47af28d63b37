import asyncio
import json
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.exceptions import ConnectionClosedError, InvalidMessage, InvalidStatus, InvalidURI
from websockets.frames import Close

from voxrelay.errors import ConfigurationError, FatalUpstreamError, TransientUpstreamError
from voxrelay.services.registry import ServiceCredentials
from voxrelay.streaming import deepgram
from voxrelay.streaming.recognition import LanguageConfig


def _results(text, is_final, languages=None):
    alt = {"transcript": text}
    if languages:
        alt["languages"] = languages
    return json.dumps({"type": "Results", "is_final": is_final, "channel": {"alternatives": [alt]}})


class _FakeWs:
    def __init__(self, messages, close_exc=None):
        self.messages = list(messages)
        self.close_exc = close_exc
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for m in self.messages:
            yield m
        if self.close_exc is not None:
            raise self.close_exc


def test_build_listen_url_single_and_multi_language():
    url = deepgram.build_listen_url(LanguageConfig.build("en-US"), endpointing_ms=300)
    q = parse_qs(urlparse(url).query)
    assert q["language"] == ["en-US"]
    assert q["encoding"] == ["linear16"]
    assert q["sample_rate"] == ["16000"]
    assert q["interim_results"] == ["true"]
    assert q["endpointing"] == ["300"]

    multi = deepgram.build_listen_url(LanguageConfig.build("en-US", ["ja-JP"]), endpointing_ms=0)
    q = parse_qs(urlparse(multi).query)
    assert q["language"] == ["multi"]
    assert "endpointing" not in q


def test_classify_close():
    assert isinstance(deepgram.classify_close(1011, "NET-0001 no audio"), TransientUpstreamError)
    err = deepgram.classify_close(1008, "bad request")
    assert isinstance(err, FatalUpstreamError)
    assert "1008" in str(err)


def test_parse_results_message():
    ev = deepgram.parse_results_message(_results("hello", True, ["en"]))
    assert ev.kind == "result"
    assert ev.transcript.text == "hello"
    assert ev.transcript.is_final is True
    assert ev.transcript.language_code == "en"

    assert deepgram.parse_results_message(_results("   ", False)) is None
    assert deepgram.parse_results_message(json.dumps({"type": "Metadata"})) is None
    assert deepgram.parse_results_message("not json") is None
    assert deepgram.parse_results_message(b"\x00") is None

    err = deepgram.parse_results_message(json.dumps({"type": "Error", "description": "timed out"}))
    assert err.kind == "error"
    assert err.error.transient is True


def test_connection_events_map_abnormal_close_to_transient_error():
    async def scenario():
        ws = _FakeWs([_results("hi", False)], close_exc=ConnectionClosedError(Close(1011, "NET-0001"), None))
        conn = deepgram.DeepgramConnection(ws)
        return [ev async for ev in conn.events()]

    events = asyncio.run(scenario())
    assert [e.kind for e in events] == ["result", "error", "end"]
    assert isinstance(events[1].error, TransientUpstreamError)


def test_connection_skips_empty_audio_and_sends_close_stream_once():
    async def scenario():
        ws = _FakeWs([])
        conn = deepgram.DeepgramConnection(ws)
        await conn.send_audio(b"")
        await conn.send_audio(b"\x01\x02")
        await conn.finish()
        await conn.finish()
        return ws.sent

    sent = asyncio.run(scenario())
    assert sent == [b"\x01\x02", deepgram.CLOSE_STREAM_MESSAGE]


def test_backend_connect_sends_token_and_maps_auth_failure(monkeypatch):
    seen = {}

    async def fake_connect(url, **kwargs):
        seen["url"] = url
        seen["headers"] = kwargs.get("additional_headers")
        return _FakeWs([])

    monkeypatch.setattr(deepgram.websockets, "connect", fake_connect)
    backend = deepgram.DeepgramRecognitionBackend(model="nova-3")
    creds = ServiceCredentials(keys={"deepgram": "dg-key"})
    conn = asyncio.run(backend.connect(LanguageConfig.build("ja-JP"), creds))
    assert isinstance(conn, deepgram.DeepgramConnection)
    assert seen["headers"] == {"Authorization": "Token dg-key"}
    assert "language=ja-JP" in seen["url"]

    async def rejecting_connect(url, **kwargs):
        raise InvalidStatus(SimpleNamespace(status_code=401))

    monkeypatch.setattr(deepgram.websockets, "connect", rejecting_connect)
    with pytest.raises(ConfigurationError, match="401"):
        asyncio.run(backend.connect(LanguageConfig.build("ja-JP"), creds))


def test_backend_connect_requires_key():
    backend = deepgram.DeepgramRecognitionBackend()
    with pytest.raises(ConfigurationError, match="deepgram API key"):
        asyncio.run(backend.connect(LanguageConfig.build("en-US"), ServiceCredentials()))


def test_backend_connect_maps_handshake_failures(monkeypatch):
    backend = deepgram.DeepgramRecognitionBackend()
    creds = ServiceCredentials(keys={"deepgram": "dg-key"})

    async def aborted_connect(url, **kwargs):
        raise InvalidMessage("did not receive a valid HTTP response")

    monkeypatch.setattr(deepgram.websockets, "connect", aborted_connect)
    with pytest.raises(FatalUpstreamError, match="handshake failed"):
        asyncio.run(backend.connect(LanguageConfig.build("en-US"), creds))

    async def bad_uri_connect(url, **kwargs):
        raise InvalidURI(url, "scheme isn't ws or wss")

    monkeypatch.setattr(deepgram.websockets, "connect", bad_uri_connect)
    with pytest.raises(FatalUpstreamError, match="handshake failed"):
        asyncio.run(backend.connect(LanguageConfig.build("en-US"), creds))
