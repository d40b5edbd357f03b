from __future__ import annotations

import logging


def configure_logging(level: str = "INFO") -> None:
    """
    Set the level for the ``access_engine`` logger tree.

    Notes:
    - Plain stdlib logging; the embedding application owns handlers/formatters.
    - Set ``ACCESS_LOG_LEVEL=DEBUG`` to see every allow/deny decision.
    """

    normalized = level.upper()
    logging.getLogger("access_engine").setLevel(normalized)
    # Child loggers (access_engine.security.*, access_engine.services.*) inherit this level.
    logging.getLogger("access_engine").propagate = True
