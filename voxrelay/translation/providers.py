# coding=utf-8
from __future__ import annotations

import threading
import urllib.error
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Any, Dict, Optional
from urllib.parse import quote

from voxrelay.errors import ConfigurationError, RateLimitError, TranslationError
from voxrelay.services.http import http_error_detail, http_json
from voxrelay.services.registry import ServiceCredentials
from voxrelay.translation.prompts import base_language, build_llm_prompt

GOOGLE_TRANSLATE_URL = "https://translation.googleapis.com/language/translate/v2"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_MODELS_URL = "https://api.anthropic.com/v1/models"
ANTHROPIC_VERSION = "2023-06-01"


def raise_for_http_error(exc: urllib.error.HTTPError, provider: str) -> None:
    detail = http_error_detail(exc)
    if exc.code == 429 or (provider == "anthropic" and exc.code == 529):
        raise RateLimitError(f"{provider} rate limited ({detail})") from exc
    if exc.code in (401, 403):
        raise ConfigurationError(f"{provider} rejected the API key ({detail})") from exc
    raise TranslationError(f"{provider} request failed ({detail})") from exc


class TranslationProvider(ABC):
    name = ""
    credential_service = ""
    uses_context = False

    def __init__(self, timeout_sec: float = 30.0) -> None:
        self.timeout_sec = max(1.0, float(timeout_sec))

    def _request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            return http_json(method, url, body, headers, self.timeout_sec)
        except urllib.error.HTTPError as exc:
            raise_for_http_error(exc, self.name)
            raise
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise TranslationError(f"{self.name} request failed: {exc}") from exc

    @abstractmethod
    def translate(
        self,
        text: str,
        context: str,
        source_language: str,
        target_language: str,
        credentials: ServiceCredentials,
        instruction_template: Optional[str] = None,
    ) -> str:
        """Blocking call; run it off the event loop."""

    def verify(self, key: str) -> None:
        raise ConfigurationError(f"{self.name} does not support key verification")


class GoogleTranslateProvider(TranslationProvider):
    """Cloud Translation v2 (REST, API key). Context is not used."""

    name = "google"
    credential_service = "google"

    def __init__(self, url: str = GOOGLE_TRANSLATE_URL, timeout_sec: float = 15.0) -> None:
        super().__init__(timeout_sec=timeout_sec)
        self.url = str(url).rstrip("/")

    def translate(
        self,
        text: str,
        context: str,
        source_language: str,
        target_language: str,
        credentials: ServiceCredentials,
        instruction_template: Optional[str] = None,
    ) -> str:
        key = credentials.require(self.credential_service)
        body = {
            "q": text,
            "target": base_language(target_language),
            "format": "text",
        }
        source = base_language(source_language)
        if source:
            body["source"] = source
        payload = self._request("POST", f"{self.url}?key={quote(key)}", body)
        translations = (payload.get("data") or {}).get("translations") or []
        if not translations or not isinstance(translations[0], dict):
            raise TranslationError("google returned no translation")
        return str(translations[0].get("translatedText") or "").strip()

    def verify(self, key: str) -> None:
        self._request("GET", f"{self.url}/languages?key={quote(str(key or '').strip())}")


class OpenAIChatProvider(TranslationProvider):
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.
    """

    name = "openai"
    credential_service = "openai"
    uses_context = True

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        max_new_tokens: int = 256,
        timeout_sec: float = 30.0,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec)
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
            normalized = normalized[: -len("/chat/completions")]
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            normalized = f"{normalized}/v1"
            self.chat_url = f"{normalized}/chat/completions"
        self.models_url = f"{normalized}/models"

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def translate(
        self,
        text: str,
        context: str,
        source_language: str,
        target_language: str,
        credentials: ServiceCredentials,
        instruction_template: Optional[str] = None,
    ) -> str:
        key = credentials.require(self.credential_service)
        prompt = build_llm_prompt(text, context, source_language, target_language, instruction_template)
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_new_tokens,
            "temperature": 0,
            "stream": False,
        }
        payload = self._request("POST", self.chat_url, body, {"Authorization": f"Bearer {key}"})
        return self._extract_content(payload)

    def verify(self, key: str) -> None:
        self._request("GET", self.models_url, headers={"Authorization": f"Bearer {str(key or '').strip()}"})


class AnthropicMessagesProvider(TranslationProvider):
    name = "anthropic"
    credential_service = "anthropic"
    uses_context = True

    def __init__(
        self,
        model: str = "claude-3-5-haiku-latest",
        max_new_tokens: int = 256,
        url: str = ANTHROPIC_MESSAGES_URL,
        timeout_sec: float = 30.0,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec)
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("anthropic model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.url = str(url)

    @staticmethod
    def _headers(key: str) -> Dict[str, str]:
        return {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION}

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> str:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            return ""
        chunks = [str(b.get("text") or "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
        return "".join(chunks).strip()

    def translate(
        self,
        text: str,
        context: str,
        source_language: str,
        target_language: str,
        credentials: ServiceCredentials,
        instruction_template: Optional[str] = None,
    ) -> str:
        key = credentials.require(self.credential_service)
        body = {
            "model": self.model,
            "max_tokens": self.max_new_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": build_llm_prompt(text, context, source_language, target_language, instruction_template),
                }
            ],
        }
        return self._extract_content(self._request("POST", self.url, body, self._headers(key)))

    def verify(self, key: str) -> None:
        self._request("GET", ANTHROPIC_MODELS_URL, headers=self._headers(str(key or "").strip()))


class LocalModelProvider(TranslationProvider):
    """
    Local causal LM translation. Requires the optional torch/transformers
    extra; the model is loaded on first use.
    """

    name = "local"
    uses_context = True

    def __init__(self, model_path: str, max_new_tokens: int = 96, device: str = "cpu") -> None:
        super().__init__()
        self.model_path = str(model_path)
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.device_request = str(device or "cpu").strip().lower()
        self.device = ""
        self.tokenizer = None
        self.model = None
        self._lock = threading.Lock()

    def _load(self) -> None:
        try:
            import torch
            from transformers import AutoModelForCausalLM, AutoTokenizer
        except ImportError as e:
            raise ConfigurationError("local translation needs the 'local' extra (torch, transformers)") from e

        resolved_device = self.device_request
        if resolved_device not in {"cpu", "cuda", "auto"}:
            resolved_device = "cpu"
        if resolved_device == "auto":
            resolved_device = "cuda" if torch.cuda.is_available() else "cpu"
        if resolved_device == "cuda" and not torch.cuda.is_available():
            raise ConfigurationError("translation device is cuda but torch.cuda is not available")
        self.device = resolved_device

        model_kwargs: Dict[str, Any] = {"trust_remote_code": True}
        if self.device == "cuda":
            bf16_ok = False
            with suppress(Exception):
                bf16_ok = bool(torch.cuda.is_bf16_supported())
            model_kwargs["dtype"] = torch.bfloat16 if bf16_ok else torch.float16
            model_kwargs["device_map"] = "auto"
        else:
            model_kwargs["dtype"] = torch.float32
            model_kwargs["device_map"] = "cpu"

        self.tokenizer = AutoTokenizer.from_pretrained(self.model_path, trust_remote_code=True)
        self.model = AutoModelForCausalLM.from_pretrained(self.model_path, **model_kwargs)

    def translate(
        self,
        text: str,
        context: str,
        source_language: str,
        target_language: str,
        credentials: ServiceCredentials,
        instruction_template: Optional[str] = None,
    ) -> str:
        import torch

        with self._lock:
            if self.model is None:
                self._load()
            messages = [
                {
                    "role": "user",
                    "content": build_llm_prompt(text, context, source_language, target_language, instruction_template),
                }
            ]
            input_ids = self.tokenizer.apply_chat_template(
                messages,
                tokenize=True,
                add_generation_prompt=True,
                return_tensors="pt",
            ).to(self.model.device)
            with torch.no_grad():
                outputs = self.model.generate(
                    input_ids,
                    max_new_tokens=self.max_new_tokens,
                    do_sample=False,
                    temperature=None,
                    top_p=None,
                    top_k=None,
                )
            new_ids = outputs[0][input_ids.shape[-1]:]
            return self.tokenizer.decode(new_ids, skip_special_tokens=True).strip()
