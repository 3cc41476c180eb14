"""Shared logging setup."""

import logging


def configure_logging(level="INFO", force: bool = False) -> None:
    """Initialise the root logger once.

    ``level`` accepts a level name or number. Pass ``force=True`` to
    reconfigure handlers that an earlier call (or a test runner) installed.
    """

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
