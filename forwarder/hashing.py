"""Canonical request hash and the ECDSA envelope around it.

Layout (packed, big-endian)::

    keccak256(from(20) ‖ to(20) ‖ relayer(20) ‖ pad32(gas) ‖ pad32(nonce) ‖ keccak256(data))

Signatures are EIP-191 ``personal_sign`` over that 32-byte hash, which is
what ``ECDSA.recover(toEthSignedMessageHash(hash), sig)`` checks on chain.
"""

from __future__ import annotations

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct
from web3 import Web3

from models.forward_request import ForwardRequest

_HASH_TYPES = ["address", "address", "address", "uint256", "uint256", "bytes32"]


def data_hash(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def canonical_hash(request: ForwardRequest) -> bytes:
    """Return the 32-byte hash a signer authorizes for *request*."""
    return bytes(
        Web3.solidity_keccak(
            _HASH_TYPES,
            [
                request.from_,
                request.to,
                request.relayer,
                request.gas,
                request.nonce,
                data_hash(request.data),
            ],
        )
    )


def signable(request_hash: bytes) -> SignableMessage:
    return encode_defunct(primitive=request_hash)


def sign_hash(request_hash: bytes, private_key: str | bytes) -> bytes:
    """Sign a canonical hash; returns 65 bytes ``r‖s‖v``."""
    signed = Account.sign_message(signable(request_hash), private_key=private_key)
    return bytes(signed.signature)


def recover_signer(request_hash: bytes, signature: bytes) -> str | None:
    """Recover the checksummed signer, or ``None`` if *signature* is malformed."""
    try:
        return Account.recover_message(signable(request_hash), signature=signature)
    except Exception:  # eth_keys raises BadSignature / ValueError on garbage
        return None
