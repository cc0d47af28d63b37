# coding=utf-8
from __future__ import annotations

import asyncio
import base64
import binascii
import urllib.error
from typing import Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote

from voxrelay.errors import ConfigurationError, RateLimitError, SynthesisError
from voxrelay.services.http import http_error_detail, http_json
from voxrelay.services.registry import ServiceCredentials, ServiceRegistry
from voxrelay.streaming.retry import RetryPolicy
from voxrelay.translation.prompts import base_language

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"

# base language -> (BCP-47 voice language, voice name)
VOICE_MAP: Dict[str, Tuple[str, str]] = {
    "en": ("en-US", "en-US-Neural2-F"),
    "ja": ("ja-JP", "ja-JP-Neural2-B"),
    "zh": ("cmn-CN", "cmn-CN-Wavenet-A"),
    "zh-TW": ("cmn-TW", "cmn-TW-Wavenet-A"),
    "ko": ("ko-KR", "ko-KR-Neural2-A"),
    "es": ("es-ES", "es-ES-Neural2-A"),
    "fr": ("fr-FR", "fr-FR-Neural2-A"),
    "de": ("de-DE", "de-DE-Neural2-A"),
    "it": ("it-IT", "it-IT-Neural2-A"),
    "pt": ("pt-BR", "pt-BR-Neural2-A"),
}


def voice_for(target_language: str) -> Tuple[str, str]:
    base = base_language(target_language)
    voice = VOICE_MAP.get(base)
    if voice is None:
        raise SynthesisError(f"no synthesis voice for language: {target_language}")
    return voice


class SpeechSynthesisBridge:
    """
    Text-to-speech for translated sentences (Google Cloud Text-to-Speech,
    API key auth). Output is MP3 bytes.
    """

    mime_type = "audio/mpeg"

    def __init__(
        self,
        registry: ServiceRegistry,
        url: str = GOOGLE_TTS_URL,
        speaking_rate: float = 1.0,
        timeout_sec: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.url = str(url)
        self.speaking_rate = max(0.25, min(4.0, float(speaking_rate)))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, base_delay_sec=1.0, multiplier=2.0)
        self._sleep = sleep

    def _synthesize_blocking(self, text: str, target_language: str, credentials: ServiceCredentials) -> bytes:
        try:
            key = credentials.require("google")
        except ConfigurationError as e:
            raise SynthesisError(str(e)) from e
        language_code, voice_name = voice_for(target_language)
        body = {
            "input": {"text": text},
            "voice": {"languageCode": language_code, "name": voice_name},
            "audioConfig": {"audioEncoding": "MP3", "speakingRate": self.speaking_rate},
        }
        try:
            payload = http_json("POST", f"{self.url}?key={quote(key)}", body, None, self.timeout_sec)
        except urllib.error.HTTPError as exc:
            if exc.code == 429:
                raise RateLimitError(f"speech synthesis rate limited ({http_error_detail(exc)})") from exc
            raise SynthesisError(f"speech synthesis failed ({http_error_detail(exc)})") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise SynthesisError(f"speech synthesis failed: {exc}") from exc
        content = payload.get("audioContent")
        if not content:
            raise SynthesisError("speech synthesis returned no audio")
        try:
            return base64.b64decode(content)
        except (binascii.Error, ValueError) as exc:
            raise SynthesisError("speech synthesis returned invalid audio") from exc

    async def synthesize(
        self,
        text: str,
        target_language: str,
        credentials: Optional[ServiceCredentials] = None,
    ) -> bytes:
        src = str(text or "").strip()
        if not src:
            raise SynthesisError("nothing to synthesize")
        creds = credentials or self.registry.snapshot()

        async def _call() -> bytes:
            return await asyncio.to_thread(self._synthesize_blocking, src, target_language, creds)

        try:
            return await self.retry_policy.run(_call, retry_on=(RateLimitError,), sleep=self._sleep)
        except RateLimitError as e:
            raise SynthesisError(str(e)) from e
