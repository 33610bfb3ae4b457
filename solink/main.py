#!/usr/bin/env python3
"""Solink price oracle node.

Streams prices from several exchanges, computes the median and submits it
to the on-chain aggregators this wallet is an oracle of. With
``--request-round`` it instead asks an aggregator to open a new round as a
requester.

The RPC client is provided by a factory, given as ``module:callable``. It is
called with the owner public key and must return a ChainClient that signs
for that key.
"""

import argparse
import asyncio
import importlib
import logging
import os
import sys

from solders.pubkey import Pubkey

from .src.AccountCodec import CodecError, to_pubkey
from .src.ChainClient import ChainClient
from .src.ErrorNotifier import ErrorNotifier
from .src.FluxAggregator import FluxAggregator
from .src.NodeConfig import ConfigError, DeployInfo, NodeConfig
from .src.PriceFeeder import PriceFeeder
from .src.RelayAdapter import RelayAdapter
from .src.RequestFeeder import RequestFeeder
from .src.feeds import get_available_feeds

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def load_client_factory(path: str):
    """Resolve a ``module:callable`` path.

    :param path: Dotted module path and attribute, e.g. ``myrpc.client:connect``.
    :returns: The callable.
    :raises ValueError: If the path is malformed or cannot be resolved.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import client factory module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{path!r} is not a callable")
    return factory


def build_relay(args: argparse.Namespace) -> RelayAdapter | None:
    """Build the relay client when a job runner URL is configured."""
    if not args.relay_url:
        return None
    return RelayAdapter(
        url=args.relay_url,
        job_id=args.relay_job_id or "",
        access_key=args.relay_access_key or "",
        secret=args.relay_secret or "",
    )


async def run_oracle(
    client: ChainClient,
    deploy: DeployInfo,
    config: NodeConfig,
    owner: Pubkey,
    relay: RelayAdapter | None,
    rpc_timeout: float,
) -> None:
    feeder = PriceFeeder(
        client=client,
        deploy=deploy,
        owner=owner,
        signer=owner,
        config=config,
        notifier=ErrorNotifier(),
        relay=relay,
        rpc_timeout=rpc_timeout,
    )
    await feeder.run()


async def run_request_round(
    client: ChainClient,
    deploy: DeployInfo,
    owner: Pubkey,
    pair: str,
    rpc_timeout: float,
) -> bool:
    program = FluxAggregator(client, deploy.program_id, rpc_timeout)
    feeder = RequestFeeder(program, deploy, owner, signer=owner)
    return await feeder.request_round(pair)


def main() -> None:
    """Main entry point for the solink oracle CLI."""
    available_feeds = get_available_feeds()

    parser = argparse.ArgumentParser(
        description="Solink: Decentralized price oracle node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price feeds:
  {', '.join(available_feeds)}

Examples:
  # Run the oracle for every aggregator this wallet is an oracle of
  python -m solink.main --deploy-file deploy.json \\
      --oracle-owner <base58> --client-factory myrpc:connect

  # Per-pair feeds and thresholds
  python -m solink.main --deploy-file deploy.json --config-file solink.json ...

  # Request a new round as a requester
  python -m solink.main --deploy-file deploy.json --request-round btc:usd ...

Environment variables (CLI args take precedence):
  DEPLOY_FILE, SOLINK_CONFIG, ORACLE_OWNER, CHAIN_CLIENT_FACTORY, RPC_TIMEOUT,
  RELAY_NODE_URL, RELAY_JOB_ID, RELAY_ACCESS_KEY, RELAY_SECRET
""",
    )

    parser.add_argument(
        "--deploy-file",
        dest="deploy_file",
        type=str,
        help="Deployment file mapping pairs to aggregator accounts",
        default=os.environ.get("DEPLOY_FILE"),
    )

    parser.add_argument(
        "--config-file",
        dest="config_file",
        type=str,
        help="Node config file with per-pair submitter settings (optional)",
        default=os.environ.get("SOLINK_CONFIG"),
    )

    parser.add_argument(
        "--oracle-owner",
        dest="oracle_owner",
        type=str,
        help="Base58 public key of the wallet owning the oracle (or requester) accounts",
        default=os.environ.get("ORACLE_OWNER"),
    )

    parser.add_argument(
        "--client-factory",
        dest="client_factory",
        type=str,
        help="RPC client factory as module:callable",
        default=os.environ.get("CHAIN_CLIENT_FACTORY"),
    )

    parser.add_argument(
        "--rpc-timeout",
        dest="rpc_timeout",
        type=float,
        help="Timeout for each RPC call in seconds (default: 30.0)",
        default=os.environ.get("RPC_TIMEOUT", "30.0"),
    )

    parser.add_argument(
        "--relay-url",
        dest="relay_url",
        type=str,
        help="Job runner URL; enables relay mode",
        default=os.environ.get("RELAY_NODE_URL"),
    )

    parser.add_argument(
        "--relay-job-id",
        dest="relay_job_id",
        type=str,
        help="Job runner job id",
        default=os.environ.get("RELAY_JOB_ID"),
    )

    parser.add_argument(
        "--relay-access-key",
        dest="relay_access_key",
        type=str,
        help="Job runner external initiator access key",
        default=os.environ.get("RELAY_ACCESS_KEY"),
    )

    parser.add_argument(
        "--relay-secret",
        dest="relay_secret",
        type=str,
        help="Job runner external initiator secret",
        default=os.environ.get("RELAY_SECRET"),
    )

    parser.add_argument(
        "--request-round",
        dest="request_round",
        type=str,
        metavar="PAIR",
        help="Request a new round for PAIR as a requester, then exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.deploy_file:
        parser.error("--deploy-file (or DEPLOY_FILE) is required")

    if not args.oracle_owner:
        parser.error("--oracle-owner (or ORACLE_OWNER) is required")

    if not args.client_factory:
        parser.error("--client-factory (or CHAIN_CLIENT_FACTORY) is required")

    if args.rpc_timeout <= 0:
        parser.error("--rpc-timeout must be positive")

    if args.relay_url and not args.relay_job_id:
        parser.error("--relay-job-id is required in relay mode")

    try:
        owner = to_pubkey(args.oracle_owner)
    except CodecError as e:
        parser.error(f"Invalid --oracle-owner: {e}")

    try:
        deploy = DeployInfo.load(args.deploy_file)
        config = NodeConfig.load(args.config_file)
        factory = load_client_factory(args.client_factory)
    except (ConfigError, ValueError) as e:
        parser.error(str(e))

    # Log configuration
    logger.info("=" * 60)
    logger.info("Solink Price Oracle")
    logger.info("=" * 60)
    logger.info(f"Program:           {deploy.program_id}")
    logger.info(f"Aggregators:       {', '.join(deploy.aggregators) or '(none)'}")
    logger.info(f"Owner:             {owner}")
    logger.info(f"Mode:              {'relay' if args.relay_url else 'direct'}")
    logger.info(f"RPC Timeout:       {args.rpc_timeout}s")
    logger.info("=" * 60)

    try:
        client = factory(owner)
        if args.request_round:
            ok = asyncio.run(
                run_request_round(client, deploy, owner, args.request_round, args.rpc_timeout)
            )
            sys.exit(0 if ok else 1)

        asyncio.run(
            run_oracle(client, deploy, config, owner, build_relay(args), args.rpc_timeout)
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
