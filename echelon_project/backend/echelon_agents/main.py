"""
Main entry point for an Echelon agent process

Exit codes: 0 graceful stop, 1 fatal runtime failure (failed registration,
invariant violation, unhandled error), 2 configuration error.
"""
import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .agent_logger import AgentLogger
from .cancellation import CancellationToken
from .chain_client import ChainClient
from .config import AgentSettings, load_settings
from .errors import ConfigurationError, EchelonError, RegistrationError
from .execution_coordinator import ExecutionCoordinator
from .indexer_client import IndexerClient
from .ledger import SubmissionLedger
from .scheduler import AgentRuntime
from .strategies import build_strategy

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

AGENT_NAMES = {
    "fund_manager": "FundManager",
    "dex_swap": "DexSwap",
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an Echelon trading agent")
    parser.add_argument("--agent-type", help="fund_manager or dex_swap (overrides AGENT_TYPE)")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    return parser.parse_args(argv)


def configure_logging():
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def install_signal_handlers(token: CancellationToken) -> List[signal.Signals]:
    """Route SIGINT/SIGTERM to the token; returns the signals actually handled"""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported by this event loop (e.g. Windows)
            logger.debug(f"Signal handler for {sig.name} not installed")
    return installed


async def run_agent(settings: AgentSettings, once: bool = False) -> int:
    """Wire the components together and run until stopped"""
    agent_logger = AgentLogger(AGENT_NAMES.get(settings.agent_type, settings.agent_type))
    token = CancellationToken()

    chain = ChainClient(
        settings.rpc_url,
        settings.private_key.get_secret_value(),
        settings.chain_id,
        receipt_poll_seconds=settings.receipt_poll_seconds,
    )
    identity = settings.identity(chain.address)
    indexer = IndexerClient(settings.indexer_url, settings.indexer_api_key)
    ledger = SubmissionLedger(settings.ledger_database_url)

    try:
        strategy = build_strategy(settings, indexer, chain, agent_logger)
        coordinator = ExecutionCoordinator(settings, chain, ledger, agent_logger)
        runtime = AgentRuntime(
            settings, chain, strategy, coordinator, token, agent_logger, identity=identity
        )

        install_signal_handlers(token)
        await runtime.verify_registration()

        if once:
            result = await runtime.run_cycle()
            logger.info(f"Single cycle finished: {result.outcome.value}")
        else:
            await runtime.start()
            await runtime.wait()

        if runtime.fatal_error is not None:
            logger.critical(f"Agent stopped on fatal error: {runtime.fatal_error}")
            return EXIT_FATAL
        return EXIT_OK

    except RegistrationError as e:
        logger.critical(f"Registration check failed: {e}")
        return EXIT_FATAL
    except EchelonError as e:
        logger.critical(f"Agent startup failed: {e}", exc_info=True)
        return EXIT_FATAL
    finally:
        await indexer.close()
        await chain.close()
        ledger.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    configure_logging()

    try:
        settings = load_settings(agent_type=args.agent_type)
    except ConfigurationError as e:
        logger.critical(str(e))
        return EXIT_CONFIG

    logger.info(f"Starting {settings.agent_type} agent {settings.agent_id} on chain {settings.chain_id}")

    try:
        return asyncio.run(run_agent(settings, once=args.once))
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception as e:
        logger.critical(f"Unhandled top-level failure: {e}", exc_info=True)
        return EXIT_FATAL


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
