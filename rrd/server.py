"""
HTTP transport for the round-robin store.

PUT /metrics   body {"timestamp": <int64>, "metric_value": <number>}
GET /metrics   ?start=<int64>&end=<int64>, both optional (default 0)
"""

import re
from typing import Optional

from aiohttp import web

from .service import RRDService
from .context import OperationContext
from .errors import RecordNotCreated, RangeQueryFailed
from .models import Record, INT64_MAX
from .logger import get_logger

DEFAULT_REQUEST_TIMEOUT = 15.0

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")


def parse_int64(text: str) -> Optional[int]:
    """Parse a decimal int64 query parameter, None if it is not one."""
    if not _INT_PATTERN.fullmatch(text):
        return None
    value = int(text)
    if value < -INT64_MAX - 1 or value > INT64_MAX:
        return None
    return value


class RRDHandlers:
    """Request handlers: validate, call the service, map failures to status codes."""

    def __init__(self, service: RRDService, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.service = service
        self.request_timeout = request_timeout
        self.logger = get_logger("RRDHandlers")

    async def create(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError as e:
            self.logger.error(f"Failed to create record, failed to decode request: {e}")
            return web.Response(status=400)

        try:
            record = Record.from_dict(payload)
        except ValueError as e:
            self.logger.error(f"Failed to create record, invalid record: {e}")
            return web.Response(status=400)

        ctx = OperationContext.with_timeout(self.request_timeout)
        try:
            await self.service.create(record, ctx)
        except RecordNotCreated as e:
            self.logger.error(f"Failed to create record {record}: {e}")
            return web.Response(status=500)

        return web.Response(status=200)

    async def get_by_range(self, request: web.Request) -> web.Response:
        bounds = {}
        for name in ("start", "end"):
            text = request.query.get(name, "")
            if text == "":
                bounds[name] = 0
                continue
            value = parse_int64(text)
            if value is None:
                self.logger.error(f"Failed to get records, {name}={text!r} is not an int64")
                return web.Response(status=400)
            bounds[name] = value

        start, end = bounds["start"], bounds["end"]
        if start > end or start < 0 or end < 0:
            self.logger.error(f"Failed to get records, invalid range start={start} end={end}")
            return web.Response(status=400)

        ctx = OperationContext.with_timeout(self.request_timeout)
        try:
            records = await self.service.get_by_range(start, end, ctx)
        except RangeQueryFailed as e:
            self.logger.error(f"Failed to get records start={start} end={end}: {e}")
            return web.Response(status=500)

        if not records:
            self.logger.debug(f"No records in range start={start} end={end}")
            return web.Response(status=204)

        return web.json_response([record.to_dict() for record in records])


def setup_routes(app: web.Application, handlers: RRDHandlers):
    app.router.add_put("/metrics", handlers.create)
    app.router.add_get("/metrics", handlers.get_by_range)
