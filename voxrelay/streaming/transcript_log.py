# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    language_code: Optional[str] = None

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"type": "transcription", "text": self.text, "is_final": bool(self.is_final)}
        if self.language_code:
            payload["language_code"] = self.language_code
        return payload


@dataclass(frozen=True)
class TranslationResult:
    original: str
    translated: str
    from_lang: str = ""
    to_lang: str = ""
    provider: str = ""

    def to_payload(self) -> Dict[str, object]:
        return {
            "type": "translation",
            "original": self.original,
            "translated": self.translated,
            "from_lang": self.from_lang,
            "to_lang": self.to_lang,
        }


@dataclass
class FinalSentence:
    sentence_id: int
    text: str
    flushed: bool = False


class TranscriptLog:
    """
    Two-part transcript state:
    - interim: the single live provisional segment, replaced on every update
    - finals: committed sentences in arrival order

    Translations are kept per original sentence text; a later translation of
    the same sentence replaces the earlier one.
    """

    def __init__(self) -> None:
        self.interim = ""
        self.finals: List[FinalSentence] = []
        self.translations: Dict[str, TranslationResult] = {}
        self._next_id = 1

    def set_interim(self, text: str) -> None:
        self.interim = str(text or "").strip()

    def append_final(self, text: str, flushed: bool = False) -> FinalSentence:
        sentence = FinalSentence(sentence_id=self._next_id, text=str(text or "").strip(), flushed=flushed)
        self._next_id += 1
        self.finals.append(sentence)
        self.interim = ""
        return sentence

    def flush_interim(self) -> Optional[FinalSentence]:
        if not self.interim:
            return None
        return self.append_final(self.interim, flushed=True)

    def record_translation(self, result: TranslationResult) -> bool:
        key = str(result.original or "").strip()
        if not key:
            return False
        prev = self.translations.get(key)
        if prev is not None and prev.translated == result.translated:
            return False
        self.translations[key] = result
        return True

    def translation_for(self, original: str) -> Optional[TranslationResult]:
        return self.translations.get(str(original or "").strip())

    def final_text(self) -> str:
        return " ".join(s.text for s in self.finals if s.text)

    def display_text(self) -> str:
        final = self.final_text()
        if self.interim:
            return f"{final} {self.interim}" if final else self.interim
        return final

    def translated_text(self) -> str:
        parts = []
        for sentence in self.finals:
            result = self.translations.get(sentence.text)
            if result is not None and result.translated:
                parts.append(result.translated)
        return " ".join(parts)

    def snapshot(self) -> Dict[str, object]:
        return {
            "interim": self.interim,
            "final_count": len(self.finals),
            "final_text": [s.text for s in self.finals],
            "translated_count": len(self.translations),
        }
