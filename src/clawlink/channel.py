"""
clawlink.channel
请求/响应关联表与完成等待器。

CallTable：按递增 id 关联请求与响应，每个调用独立计时，恰好结算一次。
CompletionWaiter：按 runId 关联生命周期事件，期限远长于单次调用。
两者都只在事件循环线程上被修改（发送、入站分发、计时器回调）。
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from .errors import CallTimeout, GatewayError, RemoteError
from .protocol import LifecycleEvent, RequestFrame, ResponseFrame

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_TIMEOUT = "timeout"

SendFunc = Callable[[RequestFrame], Awaitable[None]]


@dataclass
class PendingCall:
    id: str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class CallTable:
    def __init__(self, send: SendFunc, default_timeout: float = 10.0):
        self._send = send
        self.default_timeout = default_timeout
        self._counter = 0
        self._pending: Dict[str, PendingCall] = {}
        # 显式指定的 id（如握手请求）在连接生命周期内同样不可复用
        self._reserved: Set[str] = set()
        self._closed: Optional[GatewayError] = None

    @property
    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def next_id(self) -> str:
        self._counter += 1
        return str(self._counter)

    async def call(
        self,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        if self._closed is not None:
            raise self._closed

        if request_id is None:
            rid = self.next_id()
        elif request_id in self._reserved or request_id.isdigit():
            raise ValueError(f"request id {request_id!r} is not available")
        else:
            rid = request_id
            self._reserved.add(rid)

        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        timer = loop.call_later(
            self.default_timeout if timeout is None else timeout, self._expire, rid
        )
        self._pending[rid] = PendingCall(id=rid, method=method, future=fut, timer=timer)
        logger.debug("-> %s id=%s", method, rid)

        try:
            await self._send(RequestFrame(id=rid, method=method, params=params if params is not None else {}))
            return await fut
        finally:
            self._discard(rid)

    def resolve(self, frame: ResponseFrame) -> bool:
        entry = self._pending.pop(frame.id, None)
        if entry is None:
            # 已超时或未知 id 的迟到响应
            logger.debug("dropping response for unknown id %s", frame.id)
            return False
        entry.timer.cancel()
        if entry.future.done():
            return False
        if frame.ok:
            entry.future.set_result(frame.payload)
        else:
            entry.future.set_exception(RemoteError(entry.method, frame.error))
        return True

    def reject_all(self, exc: GatewayError) -> None:
        self._closed = exc
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(exc)

    def _expire(self, rid: str) -> None:
        entry = self._pending.pop(rid, None)
        if entry is None or entry.future.done():
            return
        logger.debug("call %s id=%s timed out", entry.method, rid)
        entry.future.set_exception(CallTimeout(entry.method))

    def _discard(self, rid: str) -> None:
        entry = self._pending.pop(rid, None)
        if entry is not None:
            entry.timer.cancel()


@dataclass
class PendingCompletion:
    run_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class CompletionWaiter:
    """
    单槽等待：每次进程调用至多一个未决等待。
    终止事件可能先于等待注册到达（chat.send 的响应与生命周期事件之间无序），
    因此记住最近结束的 runId。
    """

    def __init__(self, remember: int = 64):
        self._wait: Optional[PendingCompletion] = None
        self._finished: Deque[str] = deque(maxlen=remember)
        self._closed: Optional[GatewayError] = None

    @property
    def pending_run_id(self) -> Optional[str]:
        return self._wait.run_id if self._wait is not None else None

    async def await_completion(self, run_id: str, timeout: float) -> Dict[str, str]:
        if self._wait is not None:
            raise RuntimeError(f"already waiting for run {self._wait.run_id}")
        if self._closed is not None:
            raise self._closed
        if run_id in self._finished:
            return {"runId": run_id, "status": STATUS_COMPLETED}

        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        timer = loop.call_later(timeout, self._expire, fut)
        self._wait = PendingCompletion(run_id=run_id, future=fut, timer=timer)
        try:
            return await fut
        finally:
            timer.cancel()
            if self._wait is not None and self._wait.future is fut:
                self._wait = None

    def on_event(self, event: LifecycleEvent) -> bool:
        if not event.is_terminal or not event.run_id:
            return False
        self._finished.append(event.run_id)
        wait = self._wait
        if wait is None or wait.run_id != event.run_id or wait.future.done():
            return False
        self._wait = None
        wait.timer.cancel()
        wait.future.set_result({"runId": wait.run_id, "status": STATUS_COMPLETED})
        logger.debug("run %s finished (%s)", event.run_id, event.phase)
        return True

    def cancel(self, exc: Optional[BaseException] = None) -> bool:
        """结算未决等待（取消或以 exc 拒绝），重复调用无效果；等待器仍可再次使用。"""
        wait, self._wait = self._wait, None
        if wait is None:
            return False
        wait.timer.cancel()
        if wait.future.done():
            return False
        if exc is None:
            wait.future.cancel()
        else:
            wait.future.set_exception(exc)
        return True

    def fail(self, exc: GatewayError) -> None:
        self._closed = exc
        self.cancel(exc)

    def _expire(self, fut: asyncio.Future) -> None:
        wait = self._wait
        if wait is None or wait.future is not fut or fut.done():
            return
        self._wait = None
        logger.info("gave up waiting for run %s", wait.run_id)
        fut.set_result({"runId": wait.run_id, "status": STATUS_TIMEOUT})
