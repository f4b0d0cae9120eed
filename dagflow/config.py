"""
Configuration settings for the DAGFlow engine.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings with environment variable support."""
    
    # Application
    APP_NAME: str = "DAGFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    # Execution
    NODE_TIMEOUT: float = 60.0  # Seconds per executor invocation
    MAX_PARALLELISM: int = 10  # Concurrent nodes per wave, 0 = unbounded
    EXECUTION_TIMEOUT: float = 0.0  # Seconds for a whole execution, 0 = unlimited
    MAX_OUTPUT_SIZE: int = 0  # Bytes of JSON per node output, 0 = unlimited
    DEFAULT_PAGE_LIMIT: int = 50
    
    # HTTP node executor
    HTTP_TIMEOUT: float = 30.0
    
    # Webhook delivery
    WEBHOOK_TIMEOUT: float = 10.0
    WEBHOOK_MAX_RETRIES: int = 3
    WEBHOOK_RETRY_DELAY: float = 1.0  # Seconds before the first retry
    WEBHOOK_RETRY_BACKOFF: float = 2.0
    
    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
