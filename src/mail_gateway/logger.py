# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail gateway.

The actual logging setup (level, handlers, format) is done once via
``logging.basicConfig()`` in the entry point (``main.py`` or ``cli serve``)
to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from mail_gateway.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Message stored")
"""

import logging

DEFAULT_LOGGER_NAME = "MailGateway"


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Retrieve a logger instance.

    Does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "MailGateway".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
