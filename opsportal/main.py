"""
Operations Portal - main entry point.

    python -m opsportal.main

Configures logging, installs the process-level fault handlers and serves the
API with uvicorn.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import uvicorn

from opsportal.config import get_settings

logger = logging.getLogger("opsportal")


def configure_logging(level: str | None = None) -> None:
    """Install a basic stream handler for the whole process."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_uncaught(exc_type, exc_value, exc_traceback) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled error in background task: %s",
        context.get("message", "no message"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


def install_excepthook() -> None:
    """Uncaught faults are logged before the interpreter exits."""
    sys.excepthook = _log_uncaught


def install_loop_exception_handler() -> None:
    """Exceptions nobody awaited (fire-and-forget tasks) are logged, not lost."""
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)


def main():
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)
    install_excepthook()
    uvicorn.run(
        "opsportal.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
