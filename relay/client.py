"""RelayClient — how the watcher hands a signed request to a relay service.

- ``LocalRelayClient``: in-process ``RelaySubmitter`` (paper mode, tests)
- ``HttpRelayClient``: remote relay service over its JSON API
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from core.errors import MetaTxError, SubmissionRejected, error_from_dict
from models.forward_request import SignedForwardRequest
from models.relay import SubmissionHandle
from relay.api import ForwardPayload
from relay.submitter import RelaySubmitter

logger = structlog.get_logger("relay.client")


class RelayClient(ABC):
    """Submission half of a relay service."""

    @abstractmethod
    async def submit(self, signed: SignedForwardRequest) -> SubmissionHandle:
        """Hand *signed* to the relay; return once the ledger accepted it."""

    async def close(self) -> None:
        """Release transport resources."""


class LocalRelayClient(RelayClient):
    """Calls a ``RelaySubmitter`` in the same process."""

    def __init__(self, submitter: RelaySubmitter) -> None:
        self._submitter = submitter

    async def submit(self, signed: SignedForwardRequest) -> SubmissionHandle:
        return await self._submitter.submit(signed)


class HttpRelayClient(RelayClient):
    """POSTs forward requests to a relay service.

    Parameters
    ----------
    url:
        Base URL of the relay service, e.g. ``http://relay-1:8600``.
    timeout:
        Per-request HTTP timeout in seconds; applies to a shared client too.
    client:
        Optional shared ``httpx.AsyncClient``; not closed by ``close``.
    """

    FORWARD_PATH = "/api/v1/forward"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    @property
    def timeout(self) -> float:
        return self._timeout

    async def submit(self, signed: SignedForwardRequest) -> SubmissionHandle:
        payload = ForwardPayload.from_signed(signed).model_dump(by_alias=True)
        try:
            resp = await self._client.post(
                self._url + self.FORWARD_PATH, json=payload, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "relay_client.transport_error",
                url=self._url,
                identity=signed.identity,
                nonce=signed.nonce,
                error=str(exc),
            )
            raise SubmissionRejected(
                f"relay {self._url} unreachable: {exc}",
                identity=signed.identity,
                nonce=signed.nonce,
            ) from exc

        body = self._json(resp)
        if resp.status_code in (200, 202) and "handle" in body:
            return SubmissionHandle.model_validate(body["handle"])

        raise self._error(resp.status_code, body, signed)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _error(
        self, status: int, body: dict[str, Any], signed: SignedForwardRequest
    ) -> MetaTxError:
        if "error" not in body:
            return SubmissionRejected(
                f"relay {self._url} answered HTTP {status}",
                identity=signed.identity,
                nonce=signed.nonce,
            )
        body = {
            "identity": signed.identity,
            "nonce": signed.nonce,
            **{k: v for k, v in body.items() if v is not None},
        }
        exc = error_from_dict(body)
        logger.info(
            "relay_client.rejected",
            url=self._url,
            status=status,
            error=exc.code,
            identity=signed.identity,
            nonce=signed.nonce,
        )
        return exc
