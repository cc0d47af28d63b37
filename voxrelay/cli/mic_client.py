# coding=utf-8
"""
Stream the local microphone to a running relay and print transcripts and
translations as they arrive.
"""
import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from voxrelay.audio.mic import MicrophoneSource
from voxrelay.audio.pcm import FRAME_SAMPLES, FrameEncoder
from voxrelay.client.channel import TransportChannel, relay_url
from voxrelay.client.recording import RecordingClient
from voxrelay.errors import CaptureUnavailableError, ChannelClosedError

logger = logging.getLogger(__name__)


def _print_update(kind: str, payload: Dict[str, Any]) -> None:
    if kind == "transcription":
        marker = "final" if payload.get("is_final") else "..."
        print(f"[{marker}] {payload.get('text', '')}", flush=True)
    elif kind == "translation":
        print(f"  -> {payload.get('translated', '')}", flush=True)
    elif kind == "time_remaining":
        print(f"({payload.get('minutes')} min remaining)", flush=True)
    elif kind == "recording_stopped":
        print(f"(stopped: {payload.get('reason', '')})", flush=True)
    elif kind == "error":
        print(f"(error: {payload.get('message', '')})", file=sys.stderr, flush=True)


async def _wait_connected(client: RecordingClient, timeout_sec: float) -> None:
    async def _poll() -> None:
        while not client.connected:
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_poll(), timeout=timeout_sec)


async def _run(args: argparse.Namespace) -> int:
    client = RecordingClient(on_update=_print_update)
    channel = TransportChannel(
        relay_url(args.host, args.port, secure=bool(args.secure)),
        client.handle_event,
        max_reconnects=int(args.max_reconnects),
        reconnect_delay_sec=float(args.reconnect_delay_sec),
    )
    client.channel = channel
    source = MicrophoneSource(device=args.device)
    encoder = FrameEncoder(FRAME_SAMPLES)
    run_task = asyncio.create_task(channel.run())
    loop = asyncio.get_running_loop()

    def _capture() -> None:
        for frame in encoder.frames(source.chunks()):
            asyncio.run_coroutine_threadsafe(client.send_frame(frame), loop)

    try:
        await _wait_connected(client, float(args.connect_timeout_sec))
        await client.start(
            source_language=args.source_language,
            target_language=args.target_language,
            translation_provider=args.translation_provider or None,
            alternative_languages=args.alternative_language or None,
        )
        capture_task = asyncio.create_task(asyncio.to_thread(_capture))
        waiters = [capture_task, run_task]
        if args.seconds and args.seconds > 0:
            waiters.append(asyncio.create_task(asyncio.sleep(float(args.seconds))))
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        source.stop()
        if capture_task in done:
            capture_task.result()
        if channel.connected and client.recording:
            await client.stop()
            await asyncio.sleep(float(args.drain_sec))
        await asyncio.wait([capture_task], timeout=1.0)
    except asyncio.TimeoutError:
        logger.error("could not connect to relay at %s", channel.url)
        return 1
    except CaptureUnavailableError as e:
        logger.error("%s", e)
        return 2
    except ChannelClosedError as e:
        logger.error("relay connection lost: %s", e)
        return 1
    finally:
        source.stop()
        await channel.close()
        run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)

    print("\n" + client.transcript.final_text(), flush=True)
    translated = client.transcript.translated_text()
    if translated:
        print(translated, flush=True)
    return 0


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="VoxRelay microphone client")
    p.add_argument("--host", default="127.0.0.1", help="Relay host")
    p.add_argument("--port", type=int, default=8024, help="Relay port")
    p.add_argument("--secure", action="store_true", help="Use wss://")
    p.add_argument("--source-language", default="en-US")
    p.add_argument("--target-language", default="ja-JP")
    p.add_argument(
        "--alternative-language",
        action="append",
        default=[],
        help="Additional recognition language (repeatable)",
    )
    p.add_argument("--translation-provider", default="", help="Override the relay's default provider")
    p.add_argument("--device", type=int, default=None, help="Input device id (see --list-devices)")
    p.add_argument("--list-devices", action="store_true", help="List audio devices and exit")
    p.add_argument("--seconds", type=float, default=0.0, help="Stop after this many seconds (0 = until Ctrl-C)")
    p.add_argument("--max-reconnects", type=int, default=5)
    p.add_argument("--reconnect-delay-sec", type=float, default=1.0)
    p.add_argument("--connect-timeout-sec", type=float, default=10.0)
    p.add_argument("--drain-sec", type=float, default=1.5, help="Wait for last results after stopping")
    p.add_argument("--log-level", default="warning", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.list_devices:
        try:
            print(MicrophoneSource.list_devices())
        except CaptureUnavailableError as e:
            logger.error("%s", e)
            raise SystemExit(2) from e
        return
    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)


if __name__ == "__main__":
    main()
