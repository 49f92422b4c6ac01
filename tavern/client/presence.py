"""
tavern.client.presence
~~~~~~~~~~~~~~~~~~~~~~

在线状态追踪：根据用户活动决定本人在会话中的在线/离线状态并上报。

规则:
  - 启动时立即上报在线，之后每 ``heartbeat_interval`` 秒检查一次；
  - 超过 ``inactivity_threshold`` 秒没有任何活动则上报离线（只报一次），
    否则在线期间每次检查都发送心跳；
  - 键盘 / 指针 / 点击 / 获得焦点都算活动，离线时会立即恢复在线；
  - 页面隐藏、失去焦点本身不会导致离线，页面重新可见算一次活动；
  - 页面卸载时尽力发送一次离线（表单编码，不重试，不抛错）；
  - ``stop()`` 一定会上报离线。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import httpx

from tavern.core.config import settings
from tavern.core.logging import get_logger

logger = get_logger(__name__)


class StatusReporter:
    """把在线状态推送到 ``POST /api/sessions/{id}/status``。"""

    def __init__(
        self,
        base_url: str,
        session_id: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = f"{base_url.rstrip('/')}/api/sessions/{session_id}/status"
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._owns_client = client is None
        self._pending: set[asyncio.Task[None]] = set()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def update(self, is_online: bool) -> None:
        """以 JSON 上报状态。

        Raises:
            httpx.HTTPError: 网络错误或非 2xx 响应。
        """
        response = await self._client.post(
            self.url, json={"isOnline": is_online}, headers=self._headers(),
        )
        response.raise_for_status()

    async def _send_beacon(self) -> None:
        try:
            await self._client.post(self.url, data={"isOnline": "false"}, headers=self._headers())
        except httpx.HTTPError as e:
            logger.debug("离线通知发送失败（忽略） | %s", e)

    def notify_offline_best_effort(self) -> None:
        """页面卸载时调用：后台发出表单编码的离线通知，不等待结果。"""
        task = asyncio.get_running_loop().create_task(self._send_beacon())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()


class PresenceTracker:
    """在线状态追踪器。

    Attributes:
        is_online: 当前认定的状态，初始为在线；仅在上报成功后改变。
    """

    def __init__(
        self,
        reporter: StatusReporter,
        *,
        heartbeat_interval: float | None = None,
        inactivity_threshold: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.reporter = reporter
        self.heartbeat_interval = heartbeat_interval or settings.PRESENCE_HEARTBEAT_INTERVAL
        self.inactivity_threshold = inactivity_threshold or settings.PRESENCE_INACTIVITY_THRESHOLD
        if self.inactivity_threshold <= self.heartbeat_interval:
            raise ValueError("inactivity_threshold must be greater than heartbeat_interval")
        self._clock = clock
        self._sleep = sleep
        self.is_online = True
        self._last_activity = clock()
        self._task: asyncio.Task[None] | None = None

    @property
    def idle_for(self) -> float:
        return self._clock() - self._last_activity

    async def _push(self, is_online: bool) -> None:
        try:
            await self.reporter.update(is_online)
        except httpx.HTTPError as e:
            logger.warning("在线状态上报失败 | online=%s | %s", is_online, e)
            return
        self.is_online = is_online

    async def start(self) -> None:
        """上报在线并启动心跳任务。"""
        self._last_activity = self._clock()
        await self._push(True)
        if self._task is None:
            self._task = asyncio.create_task(self._heartbeat())

    async def _heartbeat(self) -> None:
        while True:
            await self._sleep(self.heartbeat_interval)
            await self.tick()

    async def tick(self) -> None:
        """一次定时检查：超时则转为离线，否则在线时发送心跳。"""
        if self.idle_for > self.inactivity_threshold:
            if self.is_online:
                logger.info("长时间无操作，标记为离线 | idle=%.0fs", self.idle_for)
                await self._push(False)
            return
        if self.is_online:
            await self._push(True)

    async def record_activity(self) -> None:
        """键盘 / 指针 / 点击等用户活动。"""
        self._last_activity = self._clock()
        if not self.is_online:
            await self._push(True)

    async def on_focus(self) -> None:
        await self.record_activity()

    async def on_blur(self) -> None:
        """失去焦点不改变状态，由无操作超时决定。"""

    async def on_visibility_change(self, hidden: bool) -> None:
        if not hidden:
            await self.record_activity()

    def on_unload(self) -> None:
        self.reporter.notify_offline_best_effort()

    async def stop(self) -> None:
        """停止心跳并上报离线。"""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._push(False)
