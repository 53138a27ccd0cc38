"""Configuration module for the NYC building insights pipeline."""

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # LLM Provider
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")

    # OpenAI Configuration
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    # Google Gemini Configuration
    GOOGLE_API_KEY: Optional[str] = os.getenv("GOOGLE_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

    # Application Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "nycdb_insights.log")
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    QUERY_TIMEOUT: int = int(os.getenv("QUERY_TIMEOUT", "30"))
    CACHE_SIZE: int = int(os.getenv("CACHE_SIZE", "100"))

    # Dataset Store
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", ":memory:")
    DATA_DIR: str = os.getenv("DATA_DIR", "data")
    ENABLE_RESULT_CACHE: bool = os.getenv("ENABLE_RESULT_CACHE", "true").lower() == "true"
    RESULT_CACHE_TTL: int = int(os.getenv("RESULT_CACHE_TTL", "600"))

    # Conversation sessions
    SESSION_TTL_MINUTES: int = int(os.getenv("SESSION_TTL_MINUTES", "30"))
    MAX_SESSIONS_PER_OWNER: int = int(os.getenv("MAX_SESSIONS_PER_OWNER", "5"))
    MAX_HISTORY: int = int(os.getenv("MAX_HISTORY", "20"))

    # Prompting
    PROMPT_CHAR_BUDGET: int = int(os.getenv("PROMPT_CHAR_BUDGET", "1500"))
    PROMPT_TOKEN_BUDGET: int = int(os.getenv("PROMPT_TOKEN_BUDGET", "2000"))

    # HTTP server
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                  If None, uses Config.LOG_LEVEL
    """
    level = log_level or Config.LOG_LEVEL

    # Convert string level to logging constant
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=numeric_level,
        format=log_format,
        datefmt=date_format,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(Config.LOG_FILE)
        ]
    )

    # Quiet chatty client libraries
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured with level: {level}")


# Initialize logging on module import
setup_logging()
