"""
tavern.services.registry
~~~~~~~~~~~~~~~~~~~~~~~~

事件流连接注册表 —— 维护 ``session_id -> {SessionConnection}`` 映射。

每个 SSE 长连接对应一个 ``SessionConnection``，内部是一个有界队列：
广播方 ``send()`` 入队，HTTP 响应体通过 ``frames()`` 出队写给客户端。
注册表本身只做增删查，遍历时一律使用加锁拍下的快照，
回调中再增删连接也不会破坏迭代。
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import AsyncIterator, Callable

from tavern.core.config import settings
from tavern.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionClosedError(Exception):
    """连接已关闭，或待发送队列已满（慢消费者按断线处理）。"""


class SessionConnection:
    """一条 SSE 长连接。

    Attributes:
        connection_id: 连接唯一标识，形如 ``sse-1a2b3c4d``。
        session_id: 所属会话。
        user_id: 连接的用户。
    """

    def __init__(self, session_id: str, user_id: str, max_queue: int | None = None) -> None:
        self.connection_id = f"sse-{uuid.uuid4().hex[:8]}"
        self.session_id = session_id
        self.user_id = user_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(
            maxsize=max_queue or settings.SSE_QUEUE_SIZE,
        )
        self._closed = False

    def __repr__(self) -> str:
        return f"<SessionConnection {self.connection_id} session={self.session_id} user={self.user_id}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """尚未被读取的帧数。"""
        return self._queue.qsize()

    def send(self, frame: str) -> None:
        """把一帧放入发送队列，不阻塞。

        Raises:
            ConnectionClosedError: 连接已关闭或队列已满。
        """
        if self._closed:
            raise ConnectionClosedError(f"{self.connection_id} is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise ConnectionClosedError(f"{self.connection_id} send queue is full") from None

    def close(self) -> None:
        """关闭连接并唤醒读取方。可重复调用。"""
        if self._closed:
            return
        self._closed = True
        # 丢弃未发送的帧，保证哨兵一定能放进去
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> str | None:
        """取出下一帧；超时返回空串，连接关闭返回 ``None``。"""
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return ""

    async def frames(self) -> AsyncIterator[str]:
        """按入队顺序逐帧产出，直到连接关闭。"""
        while True:
            frame = await self.get()
            if frame is None:
                return
            yield frame


class ConnectionRegistry:
    """会话到连接集合的线程安全映射。

    不是模块级单例：由 ``tavern.main`` 在生命周期中创建并挂到
    ``app.state.registry``，测试中直接实例化。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, set[SessionConnection]] = {}

    def add(self, session_id: str, conn: SessionConnection) -> None:
        with self._lock:
            self._sessions.setdefault(session_id, set()).add(conn)
            total = len(self._sessions[session_id])
        logger.info("连接已注册 | session=%s | conn=%s | total=%d", session_id, conn.connection_id, total)

    def remove(self, session_id: str, conn: SessionConnection) -> bool:
        """移除连接；集合为空时删除该会话的键。

        Returns:
            本次是否真的移除了连接（重复调用返回 ``False``）。
        """
        with self._lock:
            conns = self._sessions.get(session_id)
            if conns is None or conn not in conns:
                return False
            conns.discard(conn)
            if not conns:
                del self._sessions[session_id]
            remaining = len(conns)
        logger.info("连接已注销 | session=%s | conn=%s | remaining=%d", session_id, conn.connection_id, remaining)
        return True

    def connections(self, session_id: str) -> tuple[SessionConnection, ...]:
        """某会话当前连接的快照。"""
        with self._lock:
            return tuple(self._sessions.get(session_id, ()))

    def for_each(self, session_id: str, fn: Callable[[SessionConnection], None]) -> None:
        """对快照中的每个连接调用 ``fn``。会话不存在时什么也不做。"""
        for conn in self.connections(session_id):
            fn(conn)

    def count(self, session_id: str) -> int:
        with self._lock:
            return len(self._sessions.get(session_id, ()))

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def close_all(self) -> int:
        """关闭全部连接（服务关闭时调用），返回关闭的连接数。

        连接关闭后读取方退出，各自的事件流会走正常的 ``close()`` 流程注销。
        """
        with self._lock:
            snapshot = [conn for conns in self._sessions.values() for conn in conns]
        for conn in snapshot:
            conn.close()
        if snapshot:
            logger.info("已关闭全部事件流连接 | count=%d", len(snapshot))
        return len(snapshot)
