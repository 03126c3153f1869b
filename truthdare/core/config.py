"""
Application configuration settings
应用配置设置 - 房间、AI 服务与聊天策略
"""

from pydantic_settings import BaseSettings
from typing import Optional, List


class Settings(BaseSettings):
    """Application settings for the truth-or-dare room service"""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1

    # Room store: "memory" keeps rooms in-process, "redis" shares them between workers
    ROOM_STORE_BACKEND: str = "memory"

    # Redis configuration
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_KEY_PREFIX: str = "truthdare"

    # OpenAI 兼容接口配置（题目生成与内容审核共用）
    OPENAI_BASE_URL: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_TOKENS: int = 200
    OPENAI_TEMPERATURE: float = 0.9
    OPENAI_TIMEOUT: int = 10               # 单次 HTTP 请求超时（秒）
    OPENAI_MAX_RETRIES: int = 2
    OPENAI_DAILY_REQUEST_LIMIT: int = 1000

    # 兜底模型列表（用逗号分隔，可为空）
    AI_FALLBACK_MODELS: str = ""

    @property
    def fallback_models_list(self) -> List[str]:
        """获取兜底模型列表"""
        if self.AI_FALLBACK_MODELS:
            return [m.strip() for m in self.AI_FALLBACK_MODELS.split(",") if m.strip()]
        return []

    # External call bounds (seconds). A call that does not finish in time counts as failed.
    AI_GENERATION_TIMEOUT: float = 15.0
    AI_MODERATION_TIMEOUT: float = 8.0

    # Admit messages when moderation is unavailable
    MODERATION_FAIL_OPEN: bool = True

    # Room rules
    NICKNAME_MIN_LENGTH: int = 3
    NICKNAME_MAX_LENGTH: int = 15
    MAX_PLAYERS_PER_ROOM: int = 12
    MIN_PLAYERS_TO_START: int = 1
    ROOM_COMMIT_MAX_RETRIES: int = 5
    ROOM_CODE_MAX_ATTEMPTS: int = 10

    # Chat policy
    CHAT_MAX_MESSAGE_LENGTH: int = 500
    CHAT_MESSAGE_COOLDOWN: float = 0.5
    CHAT_MAX_MESSAGES_PER_MINUTE: int = 30

    # Room lifecycle
    ROOM_IDLE_TIMEOUT: int = 21600  # 6 hours
    ROOM_CLEANUP_INTERVAL: int = 3600

    # Resource limits reported by /health
    MAX_MEMORY_MB: int = 512
    MAX_CPU_PERCENT: int = 80

    # WebSocket configuration
    MAX_WEBSOCKET_CONNECTIONS: int = 200
    WEBSOCKET_PING_INTERVAL: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
