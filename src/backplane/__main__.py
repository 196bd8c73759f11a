"""Entry point: `python -m backplane` or the `backplane` console script."""

import logging
import os

from . import setup_logging
from .config import config_manager


def main() -> None:
    config = config_manager.get_config()
    setup_logging(
        level=config_manager.get_log_level(),
        file_path=config_manager.get_custom_log_path(),
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    logging.info("backplane started")

    from .textual_app import run

    try:
        if os.environ.get("BACKPLANE_TEST"):
            print("Test mode")
        else:
            run(config)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logging.critical(f"Crash: {e}", exc_info=True)
        print(f"Crash: {e}")
        raise SystemExit(1)
    finally:
        logging.info("backplane stopped")


if __name__ == "__main__":
    main()
