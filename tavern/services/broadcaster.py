"""
tavern.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~

事件广播器 —— 把一个事件推送给某会话的全部在线连接。

广播是同步的：事件只序列化一次，随后逐个 ``put_nowait`` 入队，
因此同一连接上的帧顺序等于广播调用顺序。投递失败的连接被关闭并
从注册表移除，其余连接照常投递，错误不会抛给调用方。
"""
from __future__ import annotations

from tavern.core.logging import get_logger
from tavern.schemas.events import BaseEvent, encode_event
from tavern.services.registry import ConnectionClosedError, ConnectionRegistry, SessionConnection

logger = get_logger(__name__)


class EventBroadcaster:
    """面向单个进程内注册表的广播器。

    Attributes:
        registry: 连接注册表。
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def broadcast(
        self,
        session_id: str,
        event: BaseEvent,
        exclude: SessionConnection | None = None,
    ) -> int:
        """向会话内所有连接（``exclude`` 除外）发送事件。

        Args:
            session_id: 目标会话。
            event: 任意事件模型。
            exclude: 不需要收到该事件的连接，通常是触发者自己。

        Returns:
            成功入队的连接数。
        """
        frame = encode_event(event)
        delivered = 0

        for conn in self.registry.connections(session_id):
            if conn is exclude:
                continue
            try:
                conn.send(frame)
            except ConnectionClosedError as e:
                logger.warning(
                    "广播失败，移除连接 | session=%s | conn=%s | pending=%d | %s",
                    session_id, conn.connection_id, conn.pending, e,
                )
                self.registry.remove(session_id, conn)
                conn.close()
                continue
            delivered += 1

        logger.debug(
            "事件已广播 | session=%s | type=%s | delivered=%d",
            session_id, getattr(event, "type", "?"), delivered,
        )
        return delivered
