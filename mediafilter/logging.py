"""
Logging setup for the command line runner.

Library modules only ever call ``logging.getLogger(__name__)``.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Decoder libraries log every chunk and object they parse at DEBUG.
NOISY_LOGGERS = ("PIL", "pypdf")


def setup_logging(verbose: bool = False) -> None:
    """
    Configure the root logger for a run.

    ``verbose`` turns on DEBUG for this package (eligibility decisions and
    the like) while Pillow and pypdf stay at WARNING.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
