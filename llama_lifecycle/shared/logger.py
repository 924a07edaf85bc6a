import logging
import os

LOG_LEVEL_ENV = "LLAMA_LIFECYCLE_LOG_LEVEL"


class Logger:
    """Utility class for standardized logging configuration."""

    @staticmethod
    def get(name: str) -> logging.Logger:
        if not logging.getLogger().hasHandlers():
            level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
            logging.basicConfig(
                level=getattr(logging, level, logging.INFO),
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            )
        return logging.getLogger(name)
