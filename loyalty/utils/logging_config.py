"""
Logging setup for the loyalty core.

Configures the root logger once per process. Level comes from LOG_LEVEL
(default INFO).
"""
import logging
import os
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

_configured = False


def setup_logging(level: str = None) -> None:
    """Configure root logging (idempotent)."""
    global _configured

    if _configured:
        return

    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(handler)

    # APScheduler is chatty at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    _configured = True
