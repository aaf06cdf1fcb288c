"""Logger lookup for the push service modules.

Handlers, levels and formats are owned by the entry points (``server.py`` and
the ``push-service`` CLI); modules only ask for a named logger.
"""

import logging


def get_logger(name: str = "AsyncPushService") -> logging.Logger:
    """Return the logger named ``name``; nothing is configured here."""
    return logging.getLogger(name)
