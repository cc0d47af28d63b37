# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from voxrelay.errors import ConfigurationError, RateLimitError
from voxrelay.services.registry import ServiceCredentials, ServiceRegistry
from voxrelay.streaming.context_buffer import truncate_context
from voxrelay.streaming.retry import RetryPolicy
from voxrelay.streaming.transcript_log import TranslationResult
from voxrelay.translation.prompts import strip_enclosing_quotes
from voxrelay.translation.providers import TranslationProvider

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_MAX_CHARS = 1000


class TranslationDispatcher:
    """
    Route one final sentence to the selected provider and normalize the
    output. Calls are independent; results carry their original sentence so
    out-of-order completions can be matched up by the caller.
    """

    def __init__(
        self,
        providers: Iterable[TranslationProvider],
        registry: ServiceRegistry,
        context_max_chars: int = DEFAULT_CONTEXT_MAX_CHARS,
        retry_policy: Optional[RetryPolicy] = None,
        instruction_template: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers: Dict[str, TranslationProvider] = {p.name: p for p in providers}
        self.registry = registry
        self.context_max_chars = max(0, int(context_max_chars))
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, base_delay_sec=1.0, multiplier=2.0)
        self.instruction_template = instruction_template
        self._sleep = sleep

    def available(self) -> List[str]:
        return sorted(self.providers)

    def resolve(self, name: str) -> TranslationProvider:
        key = str(name or "").strip().lower()
        provider = self.providers.get(key)
        if provider is None:
            raise ConfigurationError(f"unknown translation provider: {name}")
        return provider

    async def translate(
        self,
        text: str,
        context: List[str],
        source_language: str,
        target_language: str,
        provider: str,
        instruction_template: Optional[str] = None,
        credentials: Optional[ServiceCredentials] = None,
    ) -> TranslationResult:
        impl = self.resolve(provider)
        src = str(text or "").strip()
        if not src:
            return TranslationResult(original=text, translated="", from_lang=source_language, to_lang=target_language, provider=impl.name)

        creds = credentials or self.registry.snapshot()
        if impl.credential_service:
            creds.require(impl.credential_service)
        ctx = truncate_context(list(context or []), self.context_max_chars) if impl.uses_context else ""
        template = instruction_template or self.instruction_template

        async def _call() -> str:
            return await asyncio.to_thread(
                impl.translate,
                src,
                ctx,
                source_language,
                target_language,
                creds,
                template,
            )

        t0 = time.monotonic()
        out = await self.retry_policy.run(_call, retry_on=(RateLimitError,), sleep=self._sleep)
        latency = time.monotonic() - t0
        if latency >= 1.0:
            logger.info(
                "translation latency provider=%s sec=%.2f src_chars=%d ctx_chars=%d",
                impl.name,
                latency,
                len(src),
                len(ctx),
            )
        return TranslationResult(
            original=text,
            translated=strip_enclosing_quotes(out),
            from_lang=source_language,
            to_lang=target_language,
            provider=impl.name,
        )
