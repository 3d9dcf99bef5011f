"""
room_session.core.config
~~~~~~~~~~~~~~~~~~~~~~~~

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

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Room Session Coordinator", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 存储 ──────────────────────────────────────────────────────────
    ROOM_STORE_BACKEND: Literal["mongo", "memory"] = Field(
        default="mongo",
        description="房间存储后端：mongo（生产）/ memory（本地调试、测试）",
    )
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串（change stream 需要副本集）",
    )
    MONGO_DB_NAME: str = Field(default="room_session", description="数据库名")
    ROOMS_COLLECTION: str = Field(default="rooms", description="房间集合名")
    USERS_COLLECTION: str = Field(default="users", description="用户资料集合名")
    STORE_MAX_ATTEMPTS: int = Field(
        default=3, ge=1,
        description="CAS 冲突 / 瞬时故障的最大尝试次数",
    )
    STORE_RETRY_BASE_DELAY: float = Field(
        default=0.5, ge=0,
        description="重试指数退避的基础间隔（秒）",
    )

    # ── 房间 ──────────────────────────────────────────────────────────
    DEFAULT_MAX_PARTICIPANTS: int = Field(default=8, gt=0, description="默认房间容量")
    ANONYMOUS_DISPLAY_NAME: str = Field(
        default="Wanderer",
        description="匿名房间内统一显示的昵称",
    )

    # ── 加入锁 ────────────────────────────────────────────────────────
    JOIN_COOLDOWN_SECONDS: float = Field(
        default=2.0, ge=0,
        description="同一客户端两次加入尝试之间的冷却时间（秒）",
    )

    # ── 附近匹配 ──────────────────────────────────────────────────────
    PROXIMITY_RADIUS_KM: float = Field(default=0.5, gt=0, description="附近房间搜索半径（公里）")
    PROXIMITY_QUERY_LIMIT: int = Field(default=20, gt=0, description="候选房间查询上限")
    PROXIMITY_MAX_CANDIDATES: int = Field(
        default=3, gt=0,
        description="快速进入时最多尝试加入的候选房间数",
    )
    QUICK_ENTRY_IDEMPOTENCY_SECONDS: float = Field(
        default=30.0, ge=0,
        description="同一用户在同一网格内重复快速进入时回到原房间的有效期（秒），0 表示关闭",
    )

    # ── 维护清理 ──────────────────────────────────────────────────────
    SWEEP_INTERVAL_SECONDS: float = Field(default=60.0, gt=0, description="清理任务间隔（秒）")
    SWEEP_MIN_ROOM_AGE_SECONDS: float = Field(
        default=120.0, ge=0,
        description="空房间至少存在多久才允许被清理（秒）",
    )

    # ── 定位 ──────────────────────────────────────────────────────────
    LOCATION_LOOKUP_URL: str = Field(
        default="https://ipapi.co/json/",
        description="IP 定位主服务",
    )
    LOCATION_FALLBACK_URL: str = Field(
        default="http://ip-api.com/json/?fields=lat,lon,city,regionName,country",
        description="IP 定位备用服务",
    )
    LOCATION_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0, description="定位请求超时（秒）")
    LOCATION_CACHE_SECONDS: float = Field(default=300.0, ge=0, description="IP 定位缓存时长（秒）")

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
