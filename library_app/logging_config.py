import logging

from rich.console import Console
from rich.logging import RichHandler

from library_app.config import settings

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Route the package's loggers through a rich console handler (idempotent)."""
    global _configured
    level_name = (level or settings.log_level).upper()
    root = logging.getLogger("library_app")
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if _configured:
        return
    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=settings.debug, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.propagate = False
    _configured = True
