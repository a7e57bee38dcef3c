"""
Application logging configuration.

This module centralises logging configuration to ensure consistent
formatting across services. Import and call ``configure_logging()`` at
application startup to configure the root logger.
"""
import logging


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with a simple format.

    SQLAlchemy's engine logger is kept at WARNING unless DEBUG is
    requested, since it is very chatty under the sweep loops.

    :param level: Logging level (e.g., 'DEBUG', 'INFO').
    """
    resolved = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if resolved <= logging.DEBUG else logging.WARNING
    )
