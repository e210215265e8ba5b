"""
llamatrix.core.config
~~~~~~~~~~~~~~~~~~~~~

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
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="llamatrix", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── Matrix 账号 ───────────────────────────────────────────────────
    MATRIX_USERNAME: str = Field(..., description="机器人使用的 Matrix 用户名（localpart 或完整 ID）")
    MATRIX_PASSWORD: str = Field(..., description="Matrix 账号密码")
    MATRIX_HOMESERVER: str = Field(
        default="matrix.org",
        description="账号所在的 homeserver（域名或完整 URL）",
    )
    INITIAL_SYNC_TIMEOUT_MS: int = Field(
        default=500,
        description="启动时首次 sync 的超时（毫秒），用于跳过历史消息",
    )

    # ── LLM 后端 ──────────────────────────────────────────────────────
    BACKEND_URL: str = Field(
        default="http://localhost:11434",
        description="Ollama 服务地址",
    )
    MODEL: str = Field(..., description="Ollama 中使用的模型名称")
    SYSTEM_PROMPT: str = Field(default="", description="可选的系统 Prompt，为空则不发送")
    BACKEND_CONNECT_TIMEOUT: float = Field(default=10.0, description="连接后端的超时（秒）")
    GENERATION_IDLE_TIMEOUT: float = Field(
        default=120.0,
        description="流式生成的空闲超时（秒），超过该时间无新数据则中止",
    )

    # ── 对话路由 ──────────────────────────────────────────────────────
    COMMAND_PREFIX: str = Field(default="!llama", description="群聊中触发机器人的命令前缀")
    CONTEXT_MAX_TURNS: int = Field(
        default=0,
        ge=0,
        description="发送给后端的最大历史轮数，0 表示不限制",
    )
    RELAY_QUEUE_DEPTH: int = Field(
        default=1,
        ge=1,
        description="生成期间每个房间最多保留的待处理请求数（保留最新的）",
    )
    RELAY_EDIT_INTERVAL: float = Field(
        default=0.0,
        ge=0.0,
        description="两次消息编辑之间的最小间隔（秒），0 表示每个增量都编辑",
    )
    TYPING_REFRESH_INTERVAL: float = Field(
        default=3.0,
        gt=0.0,
        description="生成期间刷新“正在输入”提示的间隔（秒）",
    )

    # ── 数据目录 ──────────────────────────────────────────────────────
    DATA_DIR: Path = Field(
        default=Path.home() / ".local" / "share" / "llamatrix",
        description="登录会话等本地数据的存放目录",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="127.0.0.1", description="状态接口监听地址")
    PORT: int = Field(default=8000, description="状态接口监听端口")
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
        """是否开启热重载。

        机器人在 lifespan 中持有长连接，热重载会导致重复登录，因此始终关闭。
        """
        return False

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
    def session_file(self) -> Path:
        """登录会话文件路径。"""
        return self.DATA_DIR / "session.json"


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
