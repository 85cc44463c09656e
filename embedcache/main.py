import logging
import os
from pathlib import Path

import uvicorn

from embedcache.api.main import create_app
from embedcache.config import SystemConfig
from embedcache.utils.logging_config import setup_logging

CONFIG_ENV_VAR = "EMBEDCACHE_CONFIG"


def initialize_directories(config: SystemConfig):
    """Create necessary directories"""
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)
    Path(config.cache.snapshot_path).parent.mkdir(parents=True, exist_ok=True)


def main():
    """Server entry point"""
    # Load configuration
    config = SystemConfig.load(os.environ.get(CONFIG_ENV_VAR, "config.yaml"))

    # Setup logging
    setup_logging(config.log_level, config.log_dir, config.json_logs)
    logger = logging.getLogger(__name__)
    logger.info("Starting embedding cache server")

    # Initialize directories
    initialize_directories(config)

    app = create_app(config=config)
    uvicorn.run(app, host=config.api.host, port=config.api.port,
                log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
