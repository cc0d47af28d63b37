#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import wave
from pathlib import Path
from typing import Any, Dict, List

import websockets
from websockets.exceptions import ConnectionClosed

from voxrelay.audio.pcm import FRAME_SAMPLES, SAMPLE_RATE
from voxrelay.debug.event_selfcheck import analyze_session_events, summarize_result


def _read_pcm16_mono_wav(path: Path) -> bytes:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        if channels != 1:
            raise ValueError(f"wav must be mono, got channels={channels}")
        if sample_width != 2:
            raise ValueError(f"wav must be 16-bit PCM, got sampwidth={sample_width}")
        if sample_rate != SAMPLE_RATE:
            raise ValueError(f"wav must be {SAMPLE_RATE}Hz, got sample_rate={sample_rate}")
        return wf.readframes(wf.getnframes())


def _frame_pcm16(raw: bytes, frame_samples: int = FRAME_SAMPLES) -> List[bytes]:
    bytes_per_frame = max(1, int(frame_samples)) * 2
    return [raw[i : i + bytes_per_frame] for i in range(0, len(raw), bytes_per_frame) if raw[i : i + bytes_per_frame]]


async def _recv_loop(ws, events: List[Dict[str, Any]], stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        except ConnectionClosed:
            break
        if isinstance(raw, bytes):
            continue
        msg = json.loads(raw)
        events.append(msg)
        if str(msg.get("type", "")).lower() == "recording_stopped":
            stop.set()


async def _replay_wav(
    ws_url: str,
    wav_path: Path,
    source_language: str,
    target_language: str,
    realtime_factor: float,
    tail_sec: float,
) -> List[Dict[str, Any]]:
    frames = _frame_pcm16(_read_pcm16_mono_wav(wav_path))
    events: List[Dict[str, Any]] = []
    stop = asyncio.Event()

    async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:
        ready = json.loads(await ws.recv())
        events.append(ready)
        if str(ready.get("type", "")).lower() != "ready":
            raise RuntimeError(f"unexpected first message: {ready}")

        await ws.send(
            json.dumps({"type": "start_stream", "source_language": source_language, "target_language": target_language})
        )
        recv_task = asyncio.create_task(_recv_loop(ws, events, stop))
        sleep_sec = max(0.0, (FRAME_SAMPLES / SAMPLE_RATE) / max(0.01, float(realtime_factor)))

        for frame in frames:
            if stop.is_set():
                break
            await ws.send(frame)
            if sleep_sec > 0:
                await asyncio.sleep(sleep_sec)

        # let translations of the last sentences arrive before stopping
        await asyncio.sleep(max(0.0, float(tail_sec)))
        if not stop.is_set():
            await ws.send(json.dumps({"type": "end_stream"}))

        try:
            await asyncio.wait_for(stop.wait(), timeout=30.0)
        except asyncio.TimeoutError:
            pass
        stop.set()
        await recv_task

    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay a wav through the relay and self-check the session event stream.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:8024/ws")
    p.add_argument("--wav", default="", help="16kHz/mono/16-bit PCM wav for replay")
    p.add_argument("--source-language", default="en-US")
    p.add_argument("--target-language", default="ja-JP")
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--tail-sec", type=float, default=3.0, help="wait after the last frame before end_stream")
    p.add_argument("--events-jsonl", default="", help="save replayed events to jsonl; or load existing when --wav omitted")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.wav:
        events = asyncio.run(
            _replay_wav(
                ws_url=str(args.ws_url),
                wav_path=Path(args.wav).expanduser(),
                source_language=str(args.source_language),
                target_language=str(args.target_language),
                realtime_factor=float(args.realtime_factor),
                tail_sec=float(args.tail_sec),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --wav for replay, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_session_events(events)
    print(summarize_result(result))
    if not result.clean:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
