# coding=utf-8
from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Dict, List, Optional

from voxrelay.client.channel import CONNECT_EVENT, DISCONNECT_EVENT, RECONNECT_FAILED_EVENT, TransportChannel
from voxrelay.streaming.transcript_log import TranscriptLog, TranslationResult

logger = logging.getLogger(__name__)

IMPLICIT_STOP_REASON = "connection lost"


class RecordingClient:
    """
    Client-side view of one recording: tracks the recording flag, the live
    transcript and translations from relay events. A disconnect while
    recording is an implicit stop and the interim is committed locally.
    """

    def __init__(
        self,
        channel: Optional[TransportChannel] = None,
        on_update: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> None:
        self.channel = channel
        self.on_update = on_update
        self.transcript = TranscriptLog()
        self.recording = False
        self.connected = False
        self.last_stop_reason = ""
        self.time_remaining_min: Optional[int] = None
        self.errors: List[str] = []
        self.audio_clips: List[bytes] = []

    def _notify(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.on_update is not None:
            self.on_update(kind, payload)

    def _stop_locally(self, reason: str) -> None:
        if not self.recording:
            return
        self.recording = False
        self.last_stop_reason = reason
        self.transcript.flush_interim()

    async def handle_event(self, payload: Dict[str, Any]) -> None:
        kind = str(payload.get("type", ""))
        if kind == CONNECT_EVENT:
            self.connected = True
        elif kind in (DISCONNECT_EVENT, RECONNECT_FAILED_EVENT):
            self.connected = False
            self._stop_locally(IMPLICIT_STOP_REASON)
        elif kind == "started":
            self.recording = True
            self.last_stop_reason = ""
        elif kind == "recording_stopped":
            self._stop_locally(str(payload.get("reason", "")))
        elif kind == "transcription":
            text = str(payload.get("text", ""))
            if payload.get("is_final"):
                self.transcript.append_final(text)
            else:
                self.transcript.set_interim(text)
        elif kind == "translation":
            self.transcript.record_translation(
                TranslationResult(
                    original=str(payload.get("original", "")),
                    translated=str(payload.get("translated", "")),
                    from_lang=str(payload.get("from_lang", "")),
                    to_lang=str(payload.get("to_lang", "")),
                )
            )
        elif kind == "tts_audio":
            audio = payload.get("audio")
            if isinstance(audio, str) and audio:
                self.audio_clips.append(base64.b64decode(audio))
        elif kind == "time_remaining":
            self.time_remaining_min = int(payload.get("minutes", 0))
        elif kind == "error":
            message = str(payload.get("message", ""))
            self.errors.append(message)
            logger.warning("relay error: %s", message)
        self._notify(kind, payload)

    async def start(
        self,
        source_language: str,
        target_language: str,
        translation_provider: Optional[str] = None,
        alternative_languages: Optional[List[str]] = None,
    ) -> None:
        if self.channel is None:
            raise RuntimeError("recording client has no channel")
        payload: Dict[str, Any] = {"source_language": source_language, "target_language": target_language}
        if translation_provider:
            payload["translation_provider"] = translation_provider
        if alternative_languages:
            payload["alternative_languages"] = list(alternative_languages)
        await self.channel.send_event("start_stream", **payload)

    async def stop(self) -> None:
        if self.channel is None:
            raise RuntimeError("recording client has no channel")
        await self.channel.send_event("end_stream")

    async def send_frame(self, frame: bytes) -> bool:
        if self.channel is None or not self.recording:
            return False
        return await self.channel.send_audio(frame)
