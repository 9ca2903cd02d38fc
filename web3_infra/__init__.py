"""metatx-relay — web3_infra package.

- ForwardRequestSigner: off-loop ECDSA signing of forward requests
- Key providers: scoped access to signing keys
- Ledger: execution-environment interface (memory / JSON-RPC)
"""

from .keys import EnvKeyProvider, KeyProvider, KeystoreKeyProvider, StaticKeyProvider, key_access
from .ledger import Ledger
from .memory_ledger import MemoryLedger
from .signer import ForwardRequestSigner
from .web3_ledger import Web3Ledger

__all__ = [
    "EnvKeyProvider",
    "ForwardRequestSigner",
    "KeyProvider",
    "KeystoreKeyProvider",
    "Ledger",
    "MemoryLedger",
    "StaticKeyProvider",
    "Web3Ledger",
    "key_access",
]
