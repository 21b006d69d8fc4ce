"""
clawlink.transport
基于 WebSocket 的单连接：发送帧，入站帧解码后交给唯一的分发点。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed
from websockets.exceptions import WebSocketException

from .errors import ConnectionClosed, ConnectionFailed, MalformedFrame
from .protocol import Frame, RequestFrame, decode_frame

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})
MAX_FRAME_SIZE = 25 * 1024 * 1024


def gateway_url(host: str, port: int) -> str:
    """回环地址用明文 ws，其他一律 wss。"""
    scheme = "ws" if host in LOOPBACK_HOSTS else "wss"
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}"


class FrameHandler(Protocol):
    def dispatch(self, frame: Frame) -> None: ...

    def on_closed(self, exc: Optional[BaseException]) -> None: ...


class Connection:
    def __init__(self, ws: Any, url: str = ""):
        self.ws = ws
        self.url = url
        self.closed = False

    @classmethod
    async def open(cls, url: str) -> "Connection":
        try:
            ws = await websockets.connect(url, open_timeout=None, max_size=MAX_FRAME_SIZE)
        except (OSError, WebSocketException) as e:
            raise ConnectionFailed(f"Cannot connect to gateway at {url}: {e}") from e
        logger.debug("connected to %s", url)
        return cls(ws, url)

    async def send(self, frame: RequestFrame) -> None:
        if self.closed:
            raise ConnectionClosed("Connection is closed")
        try:
            await self.ws.send(frame.encode())
        except WebSocketClosed as e:
            raise ConnectionClosed("Connection closed unexpectedly") from e

    async def run(self, handler: FrameHandler) -> None:
        """读循环：畸形帧记录后丢弃，连接结束时通知 handler 一次。"""
        error: Optional[BaseException] = None
        try:
            async for raw in self.ws:
                try:
                    frame = decode_frame(raw)
                except MalformedFrame as e:
                    logger.warning("Received malformed message from gateway: %s", e)
                    continue
                handler.dispatch(frame)
        except WebSocketClosed as e:
            error = e
            logger.debug("connection to %s lost: %s", self.url, e)
        finally:
            self.closed = True
            handler.on_closed(error)

    async def close(self) -> None:
        self.closed = True
        try:
            await asyncio.wait_for(self.ws.close(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.debug("timed out closing %s", self.url)
