"""
backplane - a live terminal dashboard for the local Docker daemon.

backplane continuously observes the container runtime (container list,
CPU/memory, network I/O, logs, host load) and lets an operator start, stop,
restart, remove, create and exec into containers without leaving the
terminal.

Main Components:
  - backend.py: Docker API wrapper (runtime client adapter)
  - sources.py: inventory, stats and host-metrics pollers
  - sessions.py: log tail and exec shell sessions
  - channel.py: the ordered, coalescing event channel
  - store.py: single-owner view state and its merge rules
  - dispatcher.py: event loop tying everything together
  - textual_app.py: Textual front end

Usage:
  python -m backplane

Dependencies:
  - docker>=7.0.0
  - psutil, PyYAML, textual
  - Python 3.10+
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_log_path() -> str:
    """
    Get the log file path following XDG Base Directory spec.

    Returns XDG_DATA_HOME/backplane/logs/backplane.log with fallback to /tmp.
    Creates directory if it doesn't exist.
    """
    xdg_data_home = os.environ.get('XDG_DATA_HOME')
    if not xdg_data_home:
        xdg_data_home = Path.home() / '.local' / 'share'
    else:
        xdg_data_home = Path(xdg_data_home)

    log_dir = xdg_data_home / 'backplane' / 'logs'

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / 'backplane.log')
    except (PermissionError, OSError):
        return '/tmp/backplane.log'


def setup_logging(level: str = "INFO", file_path: Optional[str] = None,
                  max_size_mb: int = 10, backup_count: int = 5) -> logging.Handler:
    """Route all logging to a rotating file; the terminal belongs to the UI."""
    handler = logging.handlers.RotatingFileHandler(
        file_path or get_log_path(),
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding='utf-8',
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return handler
