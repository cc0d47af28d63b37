# coding=utf-8
"""
Client side of the relay websocket: JSON control events, binary audio frames
and a bounded reconnect loop.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from voxrelay.errors import ChannelClosedError

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"
RECONNECT_FAILED_EVENT = "reconnect_failed"


class TransportChannel:
    """
    ``run()`` keeps the connection up: after a drop it retries at most
    ``max_reconnects`` times with a fixed delay, and the counter resets on
    every successful connect. Synthetic ``connect``/``disconnect`` events
    are delivered to ``on_event`` alongside server events.
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        max_reconnects: int = 5,
        reconnect_delay_sec: float = 1.0,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = str(url)
        self.on_event = on_event
        self.max_reconnects = max(0, int(max_reconnects))
        self.reconnect_delay_sec = max(0.0, float(reconnect_delay_sec))
        self._connect = connect
        self._sleep = sleep
        self._ws: Any = None
        self._send_lock = asyncio.Lock()
        self._closing = False
        self.reconnects = 0
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            await self.on_event(payload)
        except Exception as e:
            logger.warning("event handler failed type=%s err=%s", payload.get("type"), e)

    async def _read_loop(self, ws: Any) -> str:
        try:
            async for raw in ws:
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except ValueError:
                    logger.debug("dropping non-json server message")
                    continue
                if isinstance(payload, dict):
                    await self._deliver(payload)
        except ConnectionClosed as exc:
            return str(getattr(exc.rcvd, "reason", "") or "connection lost")
        return "closed"

    async def run(self) -> None:
        attempts = 0
        while not self._closing:
            try:
                ws = await self._connect(self.url)
            except (OSError, asyncio.TimeoutError, InvalidHandshake) as e:
                logger.info("relay connect failed url=%s attempt=%d err=%s", self.url, attempts, e)
            else:
                attempts = 0
                self._ws = ws
                logger.info("relay connected url=%s", self.url)
                await self._deliver({"type": CONNECT_EVENT})
                reason = await self._read_loop(ws)
                self._ws = None
                logger.info("relay disconnected url=%s reason=%s", self.url, reason)
                await self._deliver({"type": DISCONNECT_EVENT, "reason": reason})

            if self._closing:
                return
            if attempts >= self.max_reconnects:
                logger.warning("relay reconnect attempts exhausted url=%s", self.url)
                await self._deliver({"type": RECONNECT_FAILED_EVENT, "attempts": attempts})
                return
            attempts += 1
            self.reconnects += 1
            await self._sleep(self.reconnect_delay_sec)

    async def send_event(self, event_type: str, **payload: Any) -> None:
        ws = self._ws
        if ws is None:
            raise ChannelClosedError(f"cannot send {event_type}: relay is not connected")
        message = json.dumps({"type": event_type, **payload}, ensure_ascii=False)
        try:
            async with self._send_lock:
                await ws.send(message)
        except ConnectionClosed as exc:
            raise ChannelClosedError(f"cannot send {event_type}: {exc}") from exc

    async def send_audio(self, frame: bytes) -> bool:
        ws = self._ws
        if ws is None:
            self.frames_dropped += 1
            return False
        try:
            async with self._send_lock:
                await ws.send(bytes(frame))
        except ConnectionClosed:
            self.frames_dropped += 1
            return False
        self.frames_sent += 1
        return True

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()


def relay_url(host: str, port: int, secure: bool = False, path: str = "/ws") -> str:
    scheme = "wss" if secure else "ws"
    return f"{scheme}://{host}:{int(port)}{path}"

