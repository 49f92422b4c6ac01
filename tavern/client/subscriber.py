"""
tavern.client.subscriber
~~~~~~~~~~~~~~~~~~~~~~~~

会话事件流的客户端订阅器，带指数退避自动重连。

状态机::

    IDLE → CONNECTING → OPEN → RECONNECTING → OPEN | FAILED
                                  FAILED → CONNECTING（再次 connect）
                                  （任意状态）→ CLOSED（disconnect）

第 k 次连续失败后（k 从 1 开始），若 k 达到 ``max_attempts`` 则进入
``FAILED``，否则等待 ``min(2 ** (k - 1), max_delay) * base_delay`` 秒再连。
成功建立连接后 k 归零。服务端正常结束流也按失败处理（与浏览器
``EventSource`` 一致）。
"""
from __future__ import annotations

import asyncio
import enum
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from tavern.core.config import settings
from tavern.core.logging import get_logger
from tavern.schemas.events import EVENT_TYPES, BaseEvent, decode_event
from tavern.schemas.session import ChatMessage

logger = get_logger(__name__)

EventCallback = Callable[[BaseEvent], Any]


class SubscriberState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class SubscriberFailedError(Exception):
    """连续失败次数达到上限，订阅器已放弃重连。"""


class SendMessageError(Exception):
    """发送聊天消息失败。

    Attributes:
        status_code: 服务端返回的 HTTP 状态码；网络错误时为 ``None``。
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionEventSubscriber:
    """订阅一个会话的事件流。

    Args:
        base_url: 服务根地址，如 ``http://localhost:8000``。
        session_id: 会话 ID。
        token: JWT，以 ``Authorization: Bearer`` 发送。
        client: 共享的 ``httpx.AsyncClient``；不传则自行创建并在断开时关闭。
        base_delay: 退避基准（秒）。
        max_delay: 退避倍数上限。
        max_attempts: 最大连续失败次数。
        sleep: 等待函数，测试时可替换。
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        base_delay: float | None = None,
        max_delay: int | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.token = token
        self.base_delay = base_delay if base_delay is not None else settings.RECONNECT_BASE_DELAY
        self.max_delay = max_delay if max_delay is not None else settings.RECONNECT_MAX_DELAY
        self.max_attempts = max_attempts if max_attempts is not None else settings.RECONNECT_MAX_ATTEMPTS
        self._sleep = sleep

        # 事件流没有整体读超时，只限制建连
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._owns_client = client is None

        self._handlers: dict[str, list[EventCallback]] = defaultdict(list)
        self._state = SubscriberState.IDLE
        self._task: asyncio.Task[None] | None = None
        self.failures = 0
        self.attempts = 0
        self.last_error: Exception | None = None

    # ── 公共接口 ──────────────────────────────────────────────────────

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def events_url(self) -> str:
        return f"{self.base_url}/api/sessions/{self.session_id}/events"

    def on(self, event_type: str, callback: EventCallback) -> EventCallback:
        """注册某类事件的回调，回调可以是普通函数或协程函数。

        Raises:
            ValueError: 未知的事件类型。
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._handlers[event_type].append(callback)
        return callback

    def backoff_delay(self, failures: int) -> float:
        """第 ``failures`` 次连续失败后的等待秒数。"""
        return min(2 ** (failures - 1), self.max_delay) * self.base_delay

    async def connect(self) -> None:
        """启动后台订阅任务。

        任务仍在运行或已 ``disconnect()`` 时无效果；``FAILED`` 后调用会清零
        失败计数并重新开始。
        """
        if self._state is SubscriberState.CLOSED:
            return
        if self._task is not None and not self._task.done():
            return
        self.failures = 0
        self._task = asyncio.create_task(self._run(), name=f"subscriber-{self.session_id}")

    async def wait(self) -> None:
        """等待订阅任务结束。

        Raises:
            SubscriberFailedError: 因连续失败而放弃。
        """
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                if self._state is not SubscriberState.CLOSED:
                    raise
        if self._state is SubscriberState.FAILED:
            raise SubscriberFailedError(
                f"Gave up after {self.failures} consecutive failures: {self.last_error}",
            )

    async def disconnect(self) -> None:
        """断开并停止重连。可重复调用。"""
        if self._state is SubscriberState.CLOSED:
            return
        self._state = SubscriberState.CLOSED
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()
        logger.info("订阅器已断开 | session=%s", self.session_id)

    async def send_message(
        self, text: str, type: str = "chat", room_id: str | None = None,
    ) -> ChatMessage:
        """通过 REST 接口发送聊天消息。

        Raises:
            SendMessageError: 网络错误或服务端返回非 2xx。
        """
        payload: dict[str, Any] = {"message": text, "type": type}
        if room_id is not None:
            payload["roomId"] = room_id
        try:
            response = await self._client.post(
                f"{self.base_url}/api/sessions/{self.session_id}/chat",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise SendMessageError(f"Failed to send message: {e}") from e

        if not response.is_success:
            try:
                msg = response.json().get("msg") or response.text
            except ValueError:
                msg = response.text
            raise SendMessageError(msg or f"HTTP {response.status_code}", response.status_code)
        return ChatMessage.model_validate(response.json()["data"])

    # ── 内部实现 ──────────────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _run(self) -> None:
        while self._state is not SubscriberState.CLOSED:
            self._state = SubscriberState.CONNECTING
            try:
                await self._consume()
                self.last_error = None
                logger.info("事件流已结束 | session=%s", self.session_id)
            except httpx.HTTPError as e:
                self.last_error = e
                logger.warning("事件流连接失败 | session=%s | %s", self.session_id, e)

            if self._state is SubscriberState.CLOSED:
                return

            self.failures += 1
            if self.failures >= self.max_attempts:
                self._state = SubscriberState.FAILED
                logger.error(
                    "事件流重连失败，放弃 | session=%s | failures=%d", self.session_id, self.failures,
                )
                return

            delay = self.backoff_delay(self.failures)
            self._state = SubscriberState.RECONNECTING
            logger.info(
                "事件流将在 %.1fs 后重连 | session=%s | failures=%d",
                delay, self.session_id, self.failures,
            )
            await self._sleep(delay)

    async def _consume(self) -> None:
        """建立一次连接并读到流结束。"""
        self.attempts += 1
        headers = {"Accept": "text/event-stream", **self._headers()}
        async with self._client.stream("GET", self.events_url, headers=headers) as response:
            response.raise_for_status()
            self._state = SubscriberState.OPEN
            self.failures = 0
            logger.info("事件流已连接 | session=%s", self.session_id)

            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line == "":
                    if data_lines:
                        await self._dispatch("\n".join(data_lines))
                        data_lines = []
                    continue
                if line.startswith(":"):
                    # 注释行（keepalive）
                    continue
                field, _, value = line.partition(":")
                if field == "data":
                    data_lines.append(value[1:] if value.startswith(" ") else value)
            if data_lines:
                await self._dispatch("\n".join(data_lines))

    async def _dispatch(self, data: str) -> None:
        try:
            event = decode_event(data)
        except ValueError as e:
            logger.warning("无法解析事件帧 | session=%s | %s", self.session_id, e)
            return
        if event is None:
            logger.debug("忽略未知事件类型 | session=%s | data=%s", self.session_id, data[:200])
            return

        for callback in list(self._handlers.get(event.type, ())):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("事件回调执行失败 | type=%s", event.type)
