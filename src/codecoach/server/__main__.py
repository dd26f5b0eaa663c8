"""codecoach JSON-lines server entry point.

Usage: python -m codecoach.server

Reads JSON requests from stdin (one per line), writes JSON responses and
notifications to stdout. All logging goes to stderr to keep the protocol clean.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Callable, Optional

from loguru import logger

from codecoach.config.logs import configure_logging
from codecoach.config.settings import Settings
from codecoach.engine.errors import CoachError, ValidationError

from .handler import INLINE_METHODS, ServerHandler
from .protocol import Notification, Request, Response

TICK_SECONDS = 1.0
FLUSH_EVERY_TICKS = 30


async def _ticker(handler: ServerHandler) -> None:
    ticks = 0
    while True:
        await asyncio.sleep(TICK_SECONDS)
        handler.coach.tick()
        ticks += 1
        if ticks % FLUSH_EVERY_TICKS == 0 and handler.coach.store.pending:
            remaining = await handler.coach.flush()
            logger.debug("outbox flush: {} writes still pending", remaining)


async def _answer(handler: ServerHandler, request: Request, write_line: Callable[[str], None]) -> None:
    try:
        result = await handler.dispatch(request)
        resp = Response(id=request.id, result=result)
    except CoachError as e:
        logger.warning("request {} failed: {}", request.method, e)
        resp = Response(id=request.id, error=e.to_dict())
    except Exception as e:
        logger.exception("request {} crashed", request.method)
        resp = Response(id=request.id, error=str(e))
    write_line(resp.to_json_line())


async def serve(handler: ServerHandler, reader, write_line: Callable[[str], None]) -> None:
    """Answer JSON-lines requests from ``reader`` until it hits EOF.

    Editor-event methods are answered in arrival order. Slower ones (hints and
    anything touching the store) run as tasks that write their own response,
    so a pending hint never holds up event ingestion.
    """
    tasks: set[asyncio.Task] = set()
    try:
        while True:
            line = await reader.readline()
            if not line:
                break  # stdin closed

            line_str = line.decode("utf-8", errors="replace").strip()
            if not line_str:
                continue

            try:
                msg = json.loads(line_str)
            except json.JSONDecodeError as e:
                write_line(Response(id=0, error=f"Invalid JSON: {e}").to_json_line())
                continue
            try:
                request = Request.from_dict(msg)
            except ValidationError as e:
                req_id = msg.get("id") if isinstance(msg, dict) else None
                write_line(Response(id=req_id if req_id is not None else 0, error=e.to_dict()).to_json_line())
                continue

            if request.method in INLINE_METHODS:
                await _answer(handler, request, write_line)
                continue
            task = asyncio.create_task(_answer(handler, request, write_line))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)
    finally:
        for task in list(tasks):
            task.cancel()


async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.load()
    configure_logging(settings.log_level)
    loop = asyncio.get_running_loop()

    def write_line(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def write_notification(notification: Notification) -> None:
        write_line(notification.to_json_line())

    handler = ServerHandler(settings=settings, write_notification=write_notification)
    ticker = asyncio.create_task(_ticker(handler))

    logger.info("codecoach-server: ready")

    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    try:
        await serve(handler, reader, write_line)
    finally:
        ticker.cancel()
        await handler.close()


if __name__ == "__main__":
    asyncio.run(main())
