"""
Logging setup shared by the API process and background dispatch.
"""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a single line format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def mask_identity(value: str, keep: int = 16) -> str:
    if not value:
        return ""
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."


__all__ = ["configure_logging", "mask_identity"]
