from __future__ import annotations

import logging
import os
import sys

import uvicorn

from cadence.config_manager import ConfigManager


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    if not root_logger.hasHandlers():
        root_logger.addHandler(console_handler)


def main() -> None:
    config_path = os.getenv("CADENCE_CONFIG_PATH", "config.yaml")
    config = ConfigManager(config_path).load_effective()
    setup_logging(config.logging.level)

    host = os.getenv("CADENCE_HOST", "0.0.0.0")
    port = int(os.getenv("CADENCE_PORT", "8080"))
    uvicorn.run("cadence.web_api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
