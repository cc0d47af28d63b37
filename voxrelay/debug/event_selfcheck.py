from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

MAX_EXAMPLES = 8


@dataclass
class SessionSelfcheckResult:
    interim_count: int
    final_count: int
    translation_count: int
    tts_count: int
    error_count: int
    stop_count: int
    orphan_translations: int
    duplicate_stops: int
    transcripts_after_stop: int
    empty_transcripts: int
    stop_reasons: List[str]
    examples: List[Dict[str, Any]]

    @property
    def clean(self) -> bool:
        return not (
            self.orphan_translations
            or self.duplicate_stops
            or self.transcripts_after_stop
            or self.empty_transcripts
        )


def analyze_session_events(events: Iterable[Dict[str, Any]]) -> SessionSelfcheckResult:
    """
    Replay server->client events of one connection and flag protocol
    anomalies: translations of sentences never finalized, more than one
    recording_stopped per recording, transcripts after a stop, and empty
    transcripts.
    """
    interim = final = translated = tts = errors = stops = 0
    orphans = dup_stops = after_stop = empty = 0
    stop_reasons: List[str] = []
    examples: List[Dict[str, Any]] = []
    finals_seen = set()
    recording = False
    stopped_this_cycle = False

    def _example(kind: str, idx: int, **fields: Any) -> None:
        if len(examples) < MAX_EXAMPLES:
            examples.append({"kind": kind, "index": idx, **fields})

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        if msg_type == "started":
            recording = True
            stopped_this_cycle = False
        elif msg_type == "transcription":
            text = str(msg.get("text", "") or "").strip()
            if msg.get("is_final"):
                final += 1
                finals_seen.add(text)
            else:
                interim += 1
            if not text:
                empty += 1
                _example("empty_transcript", idx)
            if not recording and stopped_this_cycle:
                after_stop += 1
                _example("transcript_after_stop", idx, text=text[:160])
        elif msg_type == "translation":
            translated += 1
            original = str(msg.get("original", "") or "").strip()
            if original not in finals_seen:
                orphans += 1
                _example("orphan_translation", idx, original=original[:160])
        elif msg_type == "tts_audio":
            tts += 1
        elif msg_type == "error":
            errors += 1
        elif msg_type == "recording_stopped":
            stops += 1
            stop_reasons.append(str(msg.get("reason", "") or ""))
            if stopped_this_cycle:
                dup_stops += 1
                _example("duplicate_stop", idx, reason=stop_reasons[-1])
            recording = False
            stopped_this_cycle = True

    return SessionSelfcheckResult(
        interim_count=interim,
        final_count=final,
        translation_count=translated,
        tts_count=tts,
        error_count=errors,
        stop_count=stops,
        orphan_translations=orphans,
        duplicate_stops=dup_stops,
        transcripts_after_stop=after_stop,
        empty_transcripts=empty,
        stop_reasons=stop_reasons,
        examples=examples,
    )


def summarize_result(result: SessionSelfcheckResult) -> str:
    lines = [
        f"interims={result.interim_count}",
        f"finals={result.final_count}",
        f"translations={result.translation_count}",
        f"tts={result.tts_count}",
        f"errors={result.error_count}",
        f"stops={result.stop_count}",
        f"stop_reasons={','.join(result.stop_reasons) or '-'}",
        f"orphan_translations={result.orphan_translations}",
        f"duplicate_stops={result.duplicate_stops}",
        f"transcripts_after_stop={result.transcripts_after_stop}",
        f"empty_transcripts={result.empty_transcripts}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
