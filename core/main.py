"""Entrypoint — uvloop event-loop, relay service, graceful shutdown."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import NoReturn

import uvloop
from eth_account import Account
from web3 import AsyncWeb3

from config.settings import Settings, settings
from core.logger import get_logger
from fees.quoter import FeeQuoter, FeeQuoterConfig
from monitoring.metrics import RelayMetrics
from relay.api import RelayApi
from relay.server import RelayServer
from relay.submitter import RelaySubmitter, SubmitterConfig
from web3_infra.keys import KeyProvider, KeystoreKeyProvider, StaticKeyProvider
from web3_infra.ledger import Ledger
from web3_infra.memory_ledger import MemoryLedger
from web3_infra.web3_ledger import Web3Ledger

log = get_logger(__name__)


class GracefulShutdown:
    """Tracks shutdown signal and provides a flag for the main loop."""

    def __init__(self) -> None:
        self._should_stop = asyncio.Event()

    @property
    def should_stop(self) -> bool:
        return self._should_stop.is_set()

    def trigger(self) -> None:
        self._should_stop.set()

    async def wait(self) -> None:
        await self._should_stop.wait()


def build_transactor(s: Settings) -> KeyProvider:
    """Key provider for the account that pays gas."""
    if s.TRANSACTOR_KEYSTORE_PATH:
        return KeystoreKeyProvider(s.TRANSACTOR_KEYSTORE_PATH, s.TRANSACTOR_KEYSTORE_PASSWORD)
    if s.TRANSACTOR_PRIVATE_KEY:
        return StaticKeyProvider(s.TRANSACTOR_PRIVATE_KEY)
    if s.APP_ENV == "prod":
        raise RuntimeError("prod requires TRANSACTOR_KEYSTORE_PATH or TRANSACTOR_PRIVATE_KEY")
    # Throwaway identity for paper runs
    return StaticKeyProvider(bytes(Account.create().key))


def build_ledger(s: Settings, transactor: KeyProvider) -> Ledger:
    """Web3Ledger in prod, MemoryLedger otherwise."""
    if s.APP_ENV == "prod":
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(s.RPC_URL))
        return Web3Ledger(
            w3,
            forwarder_address=s.FORWARDER_ADDRESS,
            pool_address=s.POOL_ADDRESS,
            router_address=s.SWAP_ROUTER_ADDRESS,
            wrapped_native=s.WRAPPED_NATIVE_ADDRESS,
            fee_token=s.FEE_TOKEN_ADDRESS,
            transactor=transactor,
            chain_id=s.CHAIN_ID,
            overhead_gas=s.FORWARDER_OVERHEAD_GAS,
        )
    return MemoryLedger(
        reserve_native=s.PAPER_RESERVE_NATIVE,
        reserve_token=s.PAPER_RESERVE_TOKEN,
        gas_price=s.PAPER_GAS_PRICE_WEI,
        pool_fee_numerator=s.POOL_FEE_NUMERATOR,
        pool_fee_denominator=s.POOL_FEE_DENOMINATOR,
    )


async def main() -> None:
    """Top-level orchestrator."""
    transactor = build_transactor(settings)
    log.info(
        "starting",
        app=settings.APP_NAME,
        env=settings.APP_ENV,
        chain_id=settings.CHAIN_ID,
        relayer=transactor.address,
    )

    shutdown = GracefulShutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: _handle_signal(s, shutdown))

    metrics = RelayMetrics()
    ledger = build_ledger(settings, transactor)
    submitter = RelaySubmitter(
        ledger,
        transactor.address,
        quoter=FeeQuoter(FeeQuoterConfig.from_settings(settings)),
        config=SubmitterConfig.from_settings(settings),
        metrics=metrics,
    )
    server = RelayServer(
        RelayApi(submitter, settings.CHAIN_ID),
        transactor.address,
        metrics=metrics,
        host=settings.RELAY_HOST,
        port=settings.RELAY_PORT,
    )

    try:
        await server.start()
        await shutdown.wait()
    except Exception:
        log.exception("fatal_error")
        sys.exit(1)
    finally:
        await server.stop()
        await submitter.stop()

    log.info("shutdown_complete")


def _handle_signal(sig: signal.Signals, shutdown: GracefulShutdown) -> None:
    """Signal handler — sets the shutdown flag."""
    log.info("signal_received", signal=sig.name)
    shutdown.trigger()


def run() -> NoReturn:
    """CLI entry: install uvloop policy and run."""
    uvloop.install()
    asyncio.run(main())
    sys.exit(0)


if __name__ == "__main__":
    run()
