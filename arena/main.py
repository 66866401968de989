import uvicorn

from arena.api.app import create_app
from arena.config import Config
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


def main():
    """Main entry point"""
    Config.validate()
    logger.info(f"Starting Runner Arena API on {Config.API_HOST}:{Config.API_PORT}")
    uvicorn.run(
        create_app(),
        host=Config.API_HOST,
        port=Config.API_PORT,
        log_level="debug" if Config.DEBUG else "info",
    )


if __name__ == "__main__":
    main()
