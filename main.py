"""
Main entry point for the statement classification service.

This module loads configuration and starts the FastAPI server.
"""
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent

# Load environment variables from .env file before settings are read
_env_file = PROJECT_ROOT / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

from core.config import get_settings  # noqa: E402
from core.exceptions import ConfigurationError  # noqa: E402
from core.logger import set_level, setup_logger  # noqa: E402

logger = setup_logger(__name__)


def main():
    """Main application entry point."""
    try:
        settings = get_settings()

        import uvicorn
        from app.api import app

        set_level(settings.log_level)

        logger.info(f"Starting {settings.app_name}")
        if settings.remote_configured:
            logger.info(f"Remote classifier model: {settings.openai_model}")
        else:
            logger.warning("OPENAI_API_KEY not set, running with local classification tiers only")
        logger.info(f"Log Level: {settings.log_level}")
        logger.info(
            f"Bulk chunking: {settings.bulk_max_tokens_per_chunk} tokens, "
            f"at most {settings.bulk_max_transactions_per_chunk} transactions per chunk"
        )

        logger.info(f"Starting server on {settings.host}:{settings.port}")

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower()
        )

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        if e.details:
            logger.error(f"Details: {e.details}")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
