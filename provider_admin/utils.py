"""
Shared helpers.
"""
import logging
import sys

from provider_admin.core import config

_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("provider_admin")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL.upper())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger under the application's logging configuration.

    Usage:
        log = get_logger(__name__)
        log.info("Running server")
    """
    _configure_root()
    if not name.startswith("provider_admin"):
        name = f"provider_admin.{name}"
    return logging.getLogger(name)


LIKE_ESCAPE = "\\"


def contains_pattern(search: str) -> str:
    """
    Lower-cased ``%search%`` pattern with LIKE wildcards escaped.

    Use with ``.like(pattern, escape=LIKE_ESCAPE)``.
    """
    escaped = (
        search.lower()
        .replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"
