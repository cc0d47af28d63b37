# coding=utf-8
"""
Deepgram live transcription over a raw websocket.
"""
from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidHandshake, InvalidStatus, InvalidURI

from voxrelay.errors import ConfigurationError, FatalUpstreamError, RecognitionError, TransientUpstreamError
from voxrelay.services.http import http_error_detail, http_json
from voxrelay.services.registry import ServiceCredentials
from voxrelay.streaming.recognition import (
    LanguageConfig,
    RecognitionBackend,
    RecognitionConnection,
    RecognitionEvent,
)

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_PROJECTS_URL = "https://api.deepgram.com/v1/projects"
# NET-0001: no audio received within the upstream idle window
TRANSIENT_CLOSE_MARKERS = ("NET-0001", "NET-0002", "timeout", "timed out")
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


def build_listen_url(
    language_config: LanguageConfig,
    base_url: str = DEEPGRAM_LISTEN_URL,
    model: str = "nova-3",
    sample_rate: int = 16000,
    endpointing_ms: int = 300,
) -> str:
    params: List[tuple] = [
        ("model", model),
        ("encoding", "linear16"),
        ("sample_rate", str(int(sample_rate))),
        ("channels", "1"),
        ("interim_results", "true"),
        ("punctuate", "true"),
        ("smart_format", "true"),
    ]
    if endpointing_ms > 0:
        params.append(("endpointing", str(int(endpointing_ms))))
    params.append(("language", "multi" if language_config.alternatives else language_config.primary))
    return f"{base_url}?{urlencode(params)}"


def classify_close(code: Optional[int], reason: str) -> RecognitionError:
    text = str(reason or "").strip()
    lowered = text.lower()
    if any(marker.lower() in lowered for marker in TRANSIENT_CLOSE_MARKERS):
        return TransientUpstreamError(f"recognition stream idle timeout ({text or code})")
    return FatalUpstreamError(f"recognition stream closed with code {code}: {text or 'no reason'}")


def parse_results_message(raw: Any) -> Optional[RecognitionEvent]:
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.debug("dropping non-json deepgram message")
        return None
    if not isinstance(payload, dict):
        return None
    msg_type = str(payload.get("type", ""))
    if msg_type == "Error":
        desc = str(payload.get("description") or payload.get("message") or "unknown error")
        return RecognitionEvent.failure(classify_close(None, desc))
    if msg_type != "Results":
        return None
    channel = payload.get("channel") if isinstance(payload.get("channel"), dict) else {}
    alternatives = channel.get("alternatives") or []
    if not alternatives or not isinstance(alternatives[0], dict):
        return None
    best = alternatives[0]
    text = str(best.get("transcript") or "").strip()
    if not text:
        return None
    languages = best.get("languages") or []
    language_code = str(languages[0]) if languages else None
    return RecognitionEvent.result(text, bool(payload.get("is_final", False)), language_code)


class DeepgramConnection(RecognitionConnection):
    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._finished = False

    async def send_audio(self, frame: bytes) -> None:
        # an empty binary message closes the deepgram stream
        if not frame:
            return
        await self._ws.send(bytes(frame))

    async def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._ws.send(CLOSE_STREAM_MESSAGE)

    async def close(self) -> None:
        await self._ws.close()

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        try:
            async for raw in self._ws:
                event = parse_results_message(raw)
                if event is not None:
                    yield event
        except ConnectionClosedOK:
            pass
        except ConnectionClosedError as exc:
            rcvd = exc.rcvd
            yield RecognitionEvent.failure(
                classify_close(getattr(rcvd, "code", None), getattr(rcvd, "reason", "") or str(exc))
            )
        yield RecognitionEvent.end()


class DeepgramRecognitionBackend(RecognitionBackend):
    name = "deepgram"
    credential_service = "deepgram"

    def __init__(
        self,
        model: str = "nova-3",
        sample_rate: int = 16000,
        endpointing_ms: int = 300,
        listen_url: str = DEEPGRAM_LISTEN_URL,
        open_timeout_sec: float = 10.0,
    ) -> None:
        self.model = str(model or "nova-3")
        self.sample_rate = int(sample_rate)
        self.endpointing_ms = max(0, int(endpointing_ms))
        self.listen_url = str(listen_url)
        self.open_timeout_sec = max(1.0, float(open_timeout_sec))

    async def connect(self, language_config: LanguageConfig, credentials: ServiceCredentials) -> RecognitionConnection:
        api_key = credentials.require(self.credential_service)
        url = build_listen_url(
            language_config,
            base_url=self.listen_url,
            model=self.model,
            sample_rate=self.sample_rate,
            endpointing_ms=self.endpointing_ms,
        )
        try:
            ws = await websockets.connect(
                url,
                additional_headers={"Authorization": f"Token {api_key}"},
                ping_interval=20,
                ping_timeout=10,
                open_timeout=self.open_timeout_sec,
            )
        except InvalidStatus as exc:
            status = int(getattr(exc.response, "status_code", 0) or 0)
            if status in (401, 403):
                raise ConfigurationError(f"deepgram rejected the API key (HTTP {status})") from exc
            raise FatalUpstreamError(f"deepgram connection failed (HTTP {status})") from exc
        except (InvalidHandshake, InvalidURI) as exc:
            raise FatalUpstreamError(f"deepgram handshake failed: {exc}") from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise FatalUpstreamError(f"deepgram connection failed: {exc}") from exc
        logger.info("deepgram stream opened model=%s languages=%s", self.model, ",".join(language_config.codes()))
        return DeepgramConnection(ws)

    async def verify(self, key: str) -> None:
        headers = {"Authorization": f"Token {str(key or '').strip()}"}
        try:
            await asyncio.to_thread(http_json, "GET", DEEPGRAM_PROJECTS_URL, None, headers, 15.0)
        except urllib.error.HTTPError as exc:
            raise ConfigurationError(f"deepgram key rejected ({http_error_detail(exc)})") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ConfigurationError(f"deepgram verification failed: {exc}") from exc

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.name, "model": self.model, "sample_rate": self.sample_rate}
