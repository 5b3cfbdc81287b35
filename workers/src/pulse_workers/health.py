"""Liveness report for the worker and API processes.

The worker serves it over a bare ``asyncio.start_server`` listener so it
does not need a web framework; the API mounts the same report on
``GET /health``.
"""

import asyncio
import json
import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .metrics import get_metrics

logger = logging.getLogger(__name__)

DB_CHECK_TIMEOUT_SECONDS = 2
_REASONS = {200: "OK", 404: "Not Found", 503: "Service Unavailable"}


async def _service_statuses(conn: psycopg.AsyncConnection[Any]) -> dict[str, str]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute("SELECT service, status FROM system_health ORDER BY service")
        return {row["service"]: row["status"] for row in await cur.fetchall()}


async def health_payload(db_url: str) -> dict[str, Any]:
    """Probe the database and fold in batch job health and process metrics."""
    services: dict[str, str] = {}
    db_ok = True
    try:
        async with asyncio.timeout(DB_CHECK_TIMEOUT_SECONDS):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                services = await _service_statuses(conn)
    except Exception:
        logger.debug("Health database probe failed", exc_info=True)
        db_ok = False

    metrics = get_metrics()
    return {
        "status": "ok" if db_ok else "degraded",
        "db": "ok" if db_ok else "error",
        "services": services,
        "uptime_seconds": metrics["uptime_seconds"],
        "metrics": metrics,
    }


def _http_response(status: int, body: dict[str, Any]) -> bytes:
    encoded = json.dumps(body).encode()
    head = (
        f"HTTP/1.1 {status} {_REASONS[status]}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(encoded)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode() + encoded


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    async def serve(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5)
            method_path = request_line.decode("latin-1").split()
            if method_path[1:2] == ["/health"]:
                payload = await health_payload(db_url)
                status = 200 if payload["status"] == "ok" else 503
                writer.write(_http_response(status, payload))
            else:
                writer.write(_http_response(404, {"error": "not_found"}))
            await writer.drain()
        except (OSError, asyncio.TimeoutError, UnicodeDecodeError):
            logger.debug("Health request aborted", exc_info=True)
        finally:
            writer.close()
            await writer.wait_closed()

    server = await asyncio.start_server(serve, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
