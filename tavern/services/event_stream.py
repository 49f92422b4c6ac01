"""
tavern.services.event_stream
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

单条会话事件流的生命周期（``CONNECTING → OPEN → CLOSED``）。

``open()`` 注册连接并依次发送 ``connected``、会话快照，再通知其他成员
``participant_joined``；``close()`` 只执行一次：注销、关闭连接、广播
``participant_left``。客户端断开、任务取消、心跳探测到断线、服务关闭
这几条路径最终都汇入 ``frames()`` 的 ``finally``。
"""
from __future__ import annotations

import enum
from collections.abc import AsyncIterator, Awaitable, Callable

from tavern.core.config import settings
from tavern.core.logging import get_logger
from tavern.schemas.events import (
    ConnectedEvent,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    SessionUpdateEvent,
    encode_event,
)
from tavern.schemas.session import GameSession
from tavern.services.broadcaster import EventBroadcaster
from tavern.services.registry import ConnectionRegistry, SessionConnection

logger = get_logger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"


class StreamState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SessionEventStream:
    """一个已通过鉴权的用户在某会话上的事件流。

    Attributes:
        session: 建立连接时加载的会话，用于生成初始快照。
        user_id: 连接的用户。
        connection: 对应的 ``SessionConnection``。
        state: 当前状态。
    """

    def __init__(
        self,
        session: GameSession,
        user_id: str,
        registry: ConnectionRegistry,
        broadcaster: EventBroadcaster,
        *,
        keepalive_interval: float | None = None,
        snapshot_limit: int | None = None,
        max_queue: int | None = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.registry = registry
        self.broadcaster = broadcaster
        self.keepalive_interval = keepalive_interval or settings.SSE_KEEPALIVE_INTERVAL
        self.snapshot_limit = (
            settings.SNAPSHOT_MESSAGE_LIMIT if snapshot_limit is None else snapshot_limit
        )
        self.connection = SessionConnection(session.id, user_id, max_queue=max_queue)
        self.state = StreamState.CONNECTING

    @property
    def session_id(self) -> str:
        return self.session.id

    def open(self) -> None:
        """注册连接并发送初始帧。只能在 ``CONNECTING`` 状态调用一次。"""
        if self.state is not StreamState.CONNECTING:
            raise RuntimeError(f"cannot open stream in state {self.state.value}")

        self.registry.add(self.session_id, self.connection)
        self.connection.send(
            encode_event(ConnectedEvent(session_id=self.session_id, user_id=self.user_id)),
        )
        self.connection.send(
            encode_event(SessionUpdateEvent(session=self.session.snapshot(self.snapshot_limit))),
        )
        self.state = StreamState.OPEN
        logger.info(
            "事件流已打开 | session=%s | user=%s | conn=%s",
            self.session_id, self.user_id, self.connection.connection_id,
        )

        self.broadcaster.broadcast(
            self.session_id,
            ParticipantJoinedEvent(user_id=self.user_id),
            exclude=self.connection,
        )

    def close(self) -> bool:
        """关闭事件流。

        Returns:
            本次调用是否真正执行了关闭（重复调用返回 ``False``）。
        """
        if self.state is StreamState.CLOSED:
            return False
        was_open = self.state is StreamState.OPEN
        self.state = StreamState.CLOSED

        self.registry.remove(self.session_id, self.connection)
        self.connection.close()
        if was_open:
            self.broadcaster.broadcast(self.session_id, ParticipantLeftEvent(user_id=self.user_id))
        logger.info(
            "事件流已关闭 | session=%s | user=%s | conn=%s",
            self.session_id, self.user_id, self.connection.connection_id,
        )
        return True

    async def frames(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """HTTP 响应体的帧生成器。

        首次迭代时打开事件流；空闲超过 ``keepalive_interval`` 时写一行
        注释心跳并探测客户端是否已断开。

        Args:
            is_disconnected: 断线探测函数，通常是 ``request.is_disconnected``。
        """
        try:
            if self.state is StreamState.CONNECTING:
                self.open()
            while True:
                frame = await self.connection.get(timeout=self.keepalive_interval)
                if frame is None:
                    break
                if frame == "":
                    if is_disconnected is not None and await is_disconnected():
                        logger.info("客户端已断开 | session=%s | user=%s", self.session_id, self.user_id)
                        break
                    yield KEEPALIVE_FRAME
                    continue
                yield frame
        finally:
            self.close()
