# coding=utf-8
from __future__ import annotations

from typing import Optional

DEFAULT_INSTRUCTION_TEMPLATE = (
    "You are a live interpreter. Translate the text below from {source_language} to {target_language}.\n"
    "Use the previous sentences only to resolve pronouns, names and terminology.\n"
    "Output only the translation of the text, without quotes, notes or explanations."
)

LANGUAGE_NAMES = {
    "ar": "Arabic",
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "hi": "Hindi",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ru": "Russian",
    "tr": "Turkish",
    "vi": "Vietnamese",
    "zh": "Chinese",
}

_QUOTE_PAIRS = {
    '"': '"',
    "'": "'",
    "“": "”",
    "‘": "’",
    "「": "」",
    "『": "』",
    "«": "»",
}


def base_language(code: str) -> str:
    text = str(code or "").strip()
    if not text:
        return ""
    lowered = text.lower()
    if lowered in {"zh-tw", "zh-hant", "zh-hk"}:
        return "zh-TW"
    return lowered.split("-")[0].split("_")[0]


def language_name(code: str) -> str:
    base = base_language(code)
    if base == "zh-TW":
        return "Traditional Chinese"
    return LANGUAGE_NAMES.get(base, str(code or "").strip() or "the source language")


def render_instruction(template: Optional[str], source_language: str, target_language: str) -> str:
    text = str(template or DEFAULT_INSTRUCTION_TEMPLATE)
    text = text.replace("{source_language}", language_name(source_language))
    return text.replace("{target_language}", language_name(target_language))


def build_llm_prompt(
    text: str,
    context: str,
    source_language: str,
    target_language: str,
    template: Optional[str] = None,
) -> str:
    parts = [render_instruction(template, source_language, target_language)]
    if context:
        parts.append(f"Previous sentences:\n{context}")
    parts.append(f"Text:\n{text}")
    return "\n\n".join(parts)


def strip_enclosing_quotes(text: str) -> str:
    out = str(text or "").strip()
    if len(out) >= 2:
        closing = _QUOTE_PAIRS.get(out[0])
        if closing is not None and out[-1] == closing:
            return out[1:-1].strip()
    return out
