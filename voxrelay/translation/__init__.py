# coding=utf-8

from .dispatcher import TranslationDispatcher
from .prompts import DEFAULT_INSTRUCTION_TEMPLATE, build_llm_prompt, strip_enclosing_quotes
from .providers import (
    AnthropicMessagesProvider,
    GoogleTranslateProvider,
    LocalModelProvider,
    OpenAIChatProvider,
    TranslationProvider,
)

__all__ = [
    "AnthropicMessagesProvider",
    "DEFAULT_INSTRUCTION_TEMPLATE",
    "GoogleTranslateProvider",
    "LocalModelProvider",
    "OpenAIChatProvider",
    "TranslationDispatcher",
    "TranslationProvider",
    "build_llm_prompt",
    "strip_enclosing_quotes",
]
