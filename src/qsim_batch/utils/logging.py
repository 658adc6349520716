from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO, *, name: str = "qsim_batch") -> logging.Logger:
    """Send ``name`` and its child loggers to stderr at ``level``.

    Calling it again only changes the level; no second handler is attached.
    """
    logger = logging.getLogger(name)
    if not any(getattr(h, "_qsim_batch", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._qsim_batch = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    logger.propagate = False
    return logger
