"""
Application settings and configuration management.
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from dotenv import load_dotenv
import yaml

# Load environment variables
load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent.parent
CONFIG_DIR = BASE_DIR / "config"
LOGS_DIR = BASE_DIR / "logs"


class Settings:
    """Application settings loaded from environment and config files."""

    # Text generation service
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", "")
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def load_agents_config(cls, config_path: Path = None) -> dict:
        """Load agent configuration from YAML file."""
        config_path = config_path or CONFIG_DIR / "agents_config.yaml"
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logging.getLogger(__name__).error(f"Failed to parse {config_path}: {e}")
                return {}
            if not isinstance(config, dict):
                logging.getLogger(__name__).error(f"Expected a mapping in {config_path}")
                return {}
            return config
        return {}

    @classmethod
    def llm_config(cls) -> dict:
        """Environment overrides for the text generation client (unset values omitted)."""
        env = {
            "llm_api_key": cls.LLM_API_KEY,
            "llm_base_url": cls.LLM_BASE_URL,
            "llm_model": cls.LLM_MODEL,
        }
        return {key: value for key, value in env.items() if value}

    @classmethod
    def load_config(cls) -> dict:
        """YAML agent configuration with environment overrides applied."""
        config = cls.load_agents_config()
        config.update(cls.llm_config())
        return config


def setup_logging(log_file: str = "arbitrage_agents.log"):
    """Configure application logging."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_level = getattr(logging, Settings.LOG_LEVEL.upper(), logging.INFO)

    # Create logs directory if needed
    LOGS_DIR.mkdir(exist_ok=True)

    # Configure root logger with rotating file handler (10MB max, 5 backups)
    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[
            logging.StreamHandler(),
            RotatingFileHandler(
                LOGS_DIR / log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
        ]
    )

    return logging.getLogger("arbitrage_agents")
