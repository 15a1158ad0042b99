from __future__ import annotations

import logging
import os
from pathlib import Path

from securevision.app import SurveillanceApp
from securevision.config import load_settings
from securevision.logs import configure_logging


def main() -> None:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    configure_logging(Path(os.getenv("LOG_DIR", "logs")), level if isinstance(level, int) else logging.INFO)
    SurveillanceApp(load_settings(".secrets")).run()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logging.info("Interrupted by user, exiting.")
