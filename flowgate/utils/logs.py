from __future__ import annotations

import logging
from typing import Optional

from ..config import LoggingConfig


def configure_logging(
    level: Optional[str] = None, config: Optional[LoggingConfig] = None
) -> None:
    """Attach a stream handler to the ``flowgate`` logger.

    Library code only ever calls ``logging.getLogger(__name__)``; handlers are
    installed here, by the CLI, so embedding applications keep control.
    """
    config = config or LoggingConfig()
    root = logging.getLogger("flowgate")
    root.setLevel((level or config.level).upper())
    if not any(getattr(h, "_flowgate", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(config.format))
        handler._flowgate = True  # type: ignore[attr-defined]
        root.addHandler(handler)
