"""metatx-relay — relay package (build, submit, watch, serve)."""

from .api import ForwardPayload, RelayApi, SettleRequest, encode_settle_call
from .builder import RequestBuilder
from .client import HttpRelayClient, LocalRelayClient, RelayClient
from .server import RelayServer
from .submitter import RelaySubmitter, SubmitterConfig
from .watcher import (
    InvalidTransitionError,
    RelayOperation,
    RelayWatcher,
    WatchState,
    WatcherConfig,
    http_client_factory,
    relayers_from_settings,
)

__all__ = [
    "ForwardPayload",
    "HttpRelayClient",
    "InvalidTransitionError",
    "LocalRelayClient",
    "RelayApi",
    "RelayClient",
    "RelayOperation",
    "RelayServer",
    "RelaySubmitter",
    "RelayWatcher",
    "RequestBuilder",
    "SettleRequest",
    "SubmitterConfig",
    "WatchState",
    "WatcherConfig",
    "encode_settle_call",
    "http_client_factory",
    "relayers_from_settings",
]
