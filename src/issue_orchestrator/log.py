"""Logging setup for the orchestrator process."""

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Attach a stderr handler to the package logger."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("issue_orchestrator")
    root.setLevel(numeric_level)
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("slack_sdk").setLevel(logging.WARNING)
