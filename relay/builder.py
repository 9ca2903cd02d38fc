"""RequestBuilder — assembles and signs forward requests for one identity."""

from __future__ import annotations

import structlog

from core.errors import SigningUnavailable
from models.forward_request import ForwardRequest, SignedForwardRequest
from relay.api import encode_settle_call
from web3_infra.signer import ForwardRequestSigner

logger = structlog.get_logger("relay.builder")


class RequestBuilder:
    """Builds ``ForwardRequest`` instances and signs them.

    Construction of the request itself is pure; the only suspension
    point is the signer.

    Parameters
    ----------
    signer:
        Started signer holding the identity's key provider.
    """

    def __init__(self, signer: ForwardRequestSigner) -> None:
        self._signer = signer

    async def build(
        self,
        from_: str,
        to: str,
        data: bytes,
        relayer: str,
        gas: int,
        nonce: int,
    ) -> SignedForwardRequest:
        """Return a signed request naming *relayer*.

        Raises
        ------
        SigningUnavailable
            If the key cannot be accessed or belongs to another identity.
        ValueError
            If an address or integer field is malformed.
        """
        request = ForwardRequest(
            from_=from_, to=to, relayer=relayer, gas=gas, nonce=nonce, data=data
        )
        try:
            signed = await self._signer.sign(request)
        except SigningUnavailable:
            raise
        except RuntimeError as exc:
            raise SigningUnavailable(str(exc), identity=request.from_, nonce=nonce) from exc

        logger.info(
            "builder.built",
            identity=request.from_,
            to=request.to,
            relayer=request.relayer,
            nonce=nonce,
            gas=gas,
        )
        return signed

    async def build_settlement(
        self,
        provider: str,
        hermes: str,
        relayer: str,
        gas: int,
        nonce: int,
        *,
        channel_id: bytes,
        amount: int,
        preimage: bytes,
        promise_signature: bytes,
    ) -> SignedForwardRequest:
        """Sign a promise settlement against *hermes* on *provider*'s behalf."""
        data = encode_settle_call(channel_id, amount, preimage, promise_signature)
        return await self.build(provider, hermes, data, relayer, gas, nonce)
