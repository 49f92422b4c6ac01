"""
tavern.core.config
~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Tavern Session Server", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="tavern", description="数据库名称")

    # ── 鉴权 ──────────────────────────────────────────────────────────
    JWT_SECRET_KEY: str = Field(..., description="JWT 签名密钥（与认证服务共享）")
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT 签名算法")
    JWT_EXPIRE_DAYS: int = Field(default=7, description="JWT 有效天数")
    AUTH_COOKIE_NAME: str = Field(default="auth-token", description="携带 JWT 的 Cookie 名")

    # ── 会话 ──────────────────────────────────────────────────────────
    DEFAULT_MAX_PLAYERS: int = Field(default=6, ge=1, description="会话默认人数上限")
    SESSION_KEY_MAX_ATTEMPTS: int = Field(
        default=10, ge=1, description="会话邀请码冲突时的最大重试次数",
    )
    SNAPSHOT_MESSAGE_LIMIT: int = Field(
        default=50, ge=0, description="快照事件中携带的最近聊天条数",
    )

    # ── 事件流（SSE）─────────────────────────────────────────────────
    SSE_QUEUE_SIZE: int = Field(
        default=256, ge=1, description="单个连接的待发送帧上限，超出视为慢消费者",
    )
    SSE_KEEPALIVE_INTERVAL: float = Field(
        default=15.0, gt=0, description="无事件时发送心跳注释行的间隔（秒）",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="是否启用 HTTP 限流")
    CHAT_RATE_LIMIT: str = Field(default="5/second", description="聊天/掷骰/信令接口限流")

    # ── 客户端（订阅器 / 在线状态）──────────────────────────────────
    PRESENCE_HEARTBEAT_INTERVAL: float = Field(
        default=30.0, gt=0, description="在线状态心跳间隔（秒）",
    )
    PRESENCE_INACTIVITY_THRESHOLD: float = Field(
        default=300.0, gt=0, description="无操作多久后判定离线（秒），全局唯一阈值",
    )
    RECONNECT_BASE_DELAY: float = Field(default=1.0, gt=0, description="重连退避基准（秒）")
    RECONNECT_MAX_DELAY: int = Field(default=16, ge=1, description="退避倍数上限")
    RECONNECT_MAX_ATTEMPTS: int = Field(default=5, ge=1, description="最大连续失败次数")

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_presence_window(self) -> Settings:
        """离线阈值必须严格大于心跳间隔，保证至少一个完整周期的宽限。"""
        if self.PRESENCE_INACTIVITY_THRESHOLD <= self.PRESENCE_HEARTBEAT_INTERVAL:
            raise ValueError(
                "PRESENCE_INACTIVITY_THRESHOLD 必须大于 PRESENCE_HEARTBEAT_INTERVAL",
            )
        return self

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
