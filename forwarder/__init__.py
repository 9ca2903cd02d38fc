"""metatx-relay — forwarder package (hashing, nonces, verification)."""

from .hashing import canonical_hash, recover_signer, sign_hash
from .nonce_store import NonceStore
from .verifier import ForwardTarget, ForwardVerifier, append_sender, split_sender

__all__ = [
    "ForwardTarget",
    "ForwardVerifier",
    "NonceStore",
    "append_sender",
    "canonical_hash",
    "recover_signer",
    "sign_hash",
    "split_sender",
]
