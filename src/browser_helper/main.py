#!/usr/bin/env python3
"""
Browser Helper background host

Entry point for running the background core outside a browser. Messages
arrive as JSON lines on stdin and responses are written as JSON lines to
stdout, the same shape a UI context would send to the background page.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

import structlog

from .background import BackgroundService
from .config.settings import get_settings


def configure_logging(level: str = "INFO"):
    """Route structlog through stdlib logging on stderr"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def parse_message(line: str) -> Optional[Dict[str, Any]]:
    """Decode one stdin line; blank or malformed lines yield None"""
    line = line.strip()
    if not line:
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring malformed message", error=str(e))
        return None
    if not isinstance(message, dict):
        return None
    message.setdefault("target", "background")
    return message


async def serve(service: BackgroundService, stdin=None, stdout=None):
    """Answer JSON-line messages until stdin closes"""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    loop = asyncio.get_running_loop()

    while True:
        line = await loop.run_in_executor(None, stdin.readline)
        if not line:
            break
        message = parse_message(line)
        if message is None:
            continue
        response = await service.handle_message(message)
        stdout.write(json.dumps({"type": message.get("type"), "response": response}) + "\n")
        stdout.flush()


async def run():
    """Start the background service, serve stdin and shut down cleanly"""
    settings = get_settings()
    configure_logging(settings.log_level.value)
    logger.info("Starting browser helper background host", **settings.summary())

    service = BackgroundService(settings)
    try:
        await service.handle_startup()
        await serve(service)
    except Exception as e:
        logger.error("Background host failed", error=str(e))
        raise
    finally:
        await service.shutdown()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
