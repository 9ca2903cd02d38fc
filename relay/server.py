"""Relay service HTTP server.

Lightweight HTTP/1.0 server on ``asyncio.start_server`` exposing:

- ``POST /api/v1/forward`` — signed forward request (``?wait=1`` blocks
  until confirmation)
- ``POST /api/v1/settle``  — promise settlement body
- ``GET /health``          — liveness plus the relayer identity
- ``GET /metrics``         — Prometheus text exposition
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any
from urllib.parse import parse_qs, urlsplit

import structlog

from monitoring.metrics import RelayMetrics
from relay.api import RelayApi

logger = structlog.get_logger("relay.server")

__all__ = ["RelayServer"]

_MAX_BODY = 1 << 20
_READ_TIMEOUT = 5.0

_REASONS = {
    200: "OK",
    202: "Accepted",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    413: "Payload Too Large",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


class RelayServer:
    """HTTP front of one relay operator.

    Parameters
    ----------
    api:
        Request handlers.
    relayer_address:
        Identity reported on ``/health``.
    metrics:
        Registry for ``/metrics``.
    """

    def __init__(
        self,
        api: RelayApi,
        relayer_address: str,
        metrics: RelayMetrics | None = None,
        host: str = "0.0.0.0",
        port: int = 8600,
    ) -> None:
        self._api = api
        self._relayer_address = relayer_address
        self._metrics = metrics
        self._host = host
        self._port = port
        self._start_time = time.monotonic()
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        """Bound port (resolves ``port=0`` after start)."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_connection, self._host, self._port)
        logger.info(
            "relay_server.started",
            host=self._host,
            port=self.port,
            relayer=self._relayer_address,
        )

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("relay_server.stopped")

    # ── HTTP handler ────────────────────────────────────────────

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT)
            if not request_line:
                return

            parts = request_line.decode("utf-8", errors="replace").split()
            if len(parts) < 2:
                await self._send_json(writer, 400, {"error": "bad_request"})
                return
            method, target = parts[0].upper(), parts[1]

            headers: dict[str, str] = {}
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT)
                if line in (b"\r\n", b"\n", b""):
                    break
                name, _, value = line.decode("latin-1").partition(":")
                headers[name.strip().lower()] = value.strip()

            url = urlsplit(target)
            query = parse_qs(url.query)
            await self._route(method, url.path, query, headers, reader, writer)

        except asyncio.TimeoutError:
            await self._send_json(writer, 400, {"error": "read_timeout"})
        except Exception:
            logger.exception("relay_server.handler_error")
            await self._send_json(writer, 500, {"error": "internal_error"})
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as exc:
                logger.debug("relay_server.close_error", error=str(exc))

    async def _route(
        self,
        method: str,
        path: str,
        query: dict[str, list[str]],
        headers: dict[str, str],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if path == "/health":
            if method != "GET":
                await self._send_json(writer, 405, {"error": "method_not_allowed"})
                return
            await self._send_json(
                writer,
                200,
                {
                    "status": "alive",
                    "relayer": self._relayer_address,
                    "uptime_seconds": round(time.monotonic() - self._start_time, 1),
                },
            )
        elif path == "/metrics":
            if self._metrics is None:
                await self._send(writer, 503, b"Metrics not configured")
                return
            await self._send(
                writer,
                200,
                self._metrics.exposition(),
                content_type="text/plain; version=0.0.4; charset=utf-8",
            )
        elif path in ("/api/v1/forward", "/api/v1/settle"):
            if method != "POST":
                await self._send_json(writer, 405, {"error": "method_not_allowed"})
                return
            body = await self._read_json(headers, reader, writer)
            if body is None:
                return
            wait = query.get("wait", ["0"])[-1] in ("1", "true", "yes")
            handler = self._api.forward if path.endswith("forward") else self._api.settle
            status, payload = await handler(body, wait=wait)
            logger.info("relay_server.request", path=path, status=status, wait=wait)
            await self._send_json(writer, status, payload)
        else:
            await self._send_json(writer, 404, {"error": "not_found"})

    async def _read_json(
        self,
        headers: dict[str, str],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> dict[str, Any] | None:
        try:
            length = int(headers.get("content-length", "0"))
        except ValueError:
            length = -1
        if length <= 0:
            await self._send_json(writer, 400, {"error": "missing_body"})
            return None
        if length > _MAX_BODY:
            await self._send_json(writer, 413, {"error": "body_too_large"})
            return None

        raw = await asyncio.wait_for(reader.readexactly(length), timeout=_READ_TIMEOUT)
        try:
            body = json.loads(raw)
        except ValueError:
            await self._send_json(writer, 400, {"error": "invalid_json"})
            return None
        if not isinstance(body, dict):
            await self._send_json(writer, 400, {"error": "invalid_json"})
            return None
        return body

    @classmethod
    async def _send_json(cls, writer: asyncio.StreamWriter, status_code: int, body: Any) -> None:
        await cls._send(writer, status_code, json.dumps(body).encode(), content_type="application/json")

    @staticmethod
    async def _send(
        writer: asyncio.StreamWriter,
        status_code: int,
        body: bytes,
        content_type: str = "text/plain",
    ) -> None:
        """Write a minimal HTTP/1.0 response."""
        header = (
            f"HTTP/1.0 {status_code} {_REASONS.get(status_code, 'Unknown')}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(header.encode() + body)
        await writer.drain()
