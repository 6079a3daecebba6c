"""
Front/back PCB scan alignment.
"""

import logging

__version__ = "0.1.0"

# Silent unless the host application configures logging.
logging.getLogger(__name__).addHandler(logging.NullHandler())


def configure_logging(level: str = None) -> None:
    """Configure root logging for command-line use."""
    from boardalign.config import settings

    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
