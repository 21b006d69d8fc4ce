"""
clawlink.session
已认证会话：拥有唯一连接、调用关联表与完成等待器；入站帧在一个分发点按类型路由。

会话对象的生命周期覆盖它发出的所有调用，关闭时恰好拆除一次。
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from .channel import CallTable, CompletionWaiter
from .config import GatewayConfig
from .errors import AuthError, ConnectionClosed, ConnectionFailed
from .handshake import HandshakeController
from .identity import IdentityStore
from .protocol import (
    METHOD_CHAT_SEND,
    ChallengeEvent,
    Frame,
    LifecycleEvent,
    OtherEvent,
    ResponseFrame,
)
from .tokens import TokenCache
from .transport import Connection

logger = logging.getLogger(__name__)

Opener = Callable[[str], Awaitable[Connection]]


class GatewaySession:
    def __init__(self, connection: Connection, handshake: HandshakeController, config: GatewayConfig):
        self.connection = connection
        self.handshake = handshake
        self.config = config
        self.calls = CallTable(connection.send, default_timeout=config.call_timeout)
        self.completions = CompletionWaiter()
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def authenticated(self) -> bool:
        return self.handshake.authenticated and not self._closed

    @property
    def hello(self) -> Any:
        return self.handshake.hello

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self.connection.run(self))

    def dispatch(self, frame: Frame) -> None:
        if isinstance(frame, ChallengeEvent):
            self.handshake.on_challenge(frame)
        elif isinstance(frame, ResponseFrame):
            self.calls.resolve(frame)
        elif isinstance(frame, LifecycleEvent):
            self.completions.on_event(frame)
        elif isinstance(frame, OtherEvent):
            logger.debug("ignoring frame %s", frame.event)

    def on_closed(self, exc: Optional[BaseException]) -> None:
        if not self._closed:
            logger.debug("gateway connection closed: %s", exc)
        self.handshake.on_closed()
        err = ConnectionClosed("Connection closed unexpectedly")
        self.calls.reject_all(err)
        self.completions.fail(err)

    def _require_auth(self) -> None:
        if self._closed:
            raise ConnectionClosed("Connection is closed")
        if not self.handshake.authenticated:
            raise AuthError("session is not authenticated")

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        self._require_auth()
        return await self.calls.call(method, params, timeout)

    async def await_completion(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, str]:
        self._require_auth()
        return await self.completions.await_completion(
            run_id, self.config.send_timeout if timeout is None else timeout
        )

    async def send_and_wait(self, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """chat.send 后等待该 run 的生命周期结束事件；响应中无 runId 时直接返回响应。"""
        params = dict(params)
        params.setdefault("idempotencyKey", str(uuid.uuid4()))
        result = await self.call(METHOD_CHAT_SEND, params)
        run_id = result.get("runId") if isinstance(result, dict) else None
        if not run_id:
            return result
        return await self.await_completion(run_id, timeout)

    async def close(self, reason: str = "Connection closed") -> None:
        if self._closed:
            return
        self._closed = True
        err = ConnectionClosed(reason)
        self.calls.reject_all(err)
        self.completions.fail(err)
        await self.connection.close()
        if self._reader is None:
            return
        if not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        elif not self._reader.cancelled() and self._reader.exception() is not None:
            logger.warning("gateway reader stopped: %r", self._reader.exception())

    async def __aenter__(self) -> "GatewaySession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def connect_and_authenticate(
    config: GatewayConfig,
    identity_store: Optional[IdentityStore] = None,
    token_cache: Optional[TokenCache] = None,
    opener: Optional[Opener] = None,
) -> GatewaySession:
    """
    打开连接并完成握手，返回已认证会话。

    连接建立期限覆盖打开连接与等待 challenge 两段，收到 challenge 即失效；
    失败时抛出 ConnectionFailed 或 AuthError，连接已关闭。
    """
    handshake = HandshakeController(config, identity_store, token_cache)
    open_connection = opener or Connection.open
    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.connect_timeout

    try:
        connection = await asyncio.wait_for(open_connection(config.url), config.connect_timeout)
    except asyncio.TimeoutError:
        raise ConnectionFailed(f"Connection to {config.url} timed out") from None

    session = GatewaySession(connection, handshake, config)
    session.start()
    try:
        await handshake.wait_for_challenge(max(0.0, deadline - loop.time()))
        await handshake.authenticate(session.calls)
    except BaseException:
        await session.close("Handshake aborted")
        raise
    logger.info("authenticated with gateway at %s", config.url)
    return session
