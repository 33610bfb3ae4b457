"""
Solink price oracle node.

This module provides the components of an oracle node:
- AccountCodec / Instructions: Binary layouts of program accounts and instructions
- feeds: Streaming exchange price feeds
- AggregatedFeed: Per-pair median of the latest fresh exchange prices
- Submitter: Round tracking and submission
- FluxAggregator: Aggregator program client over an injected ChainClient
- PriceFeeder: Main orchestrator
"""

from .AccountCodec import (
    MAX_ORACLES,
    Aggregator,
    AggregatorConfig,
    Answer,
    CodecError,
    Oracle,
    Requester,
    Round,
    Submission,
    Submissions,
    to_pubkey,
)
from .AggregatedFeed import AggregatedFeed
from .ChainClient import (
    ChainClient,
    ChainClientError,
    ProgramErrorCode,
    ProgramRejectedError,
    TransactionError,
)
from .ErrorNotifier import ErrorNotifier
from .FluxAggregator import FluxAggregator
from .Instructions import decode_instruction, encode_instruction
from .NodeConfig import ConfigError, DeployInfo, NodeConfig
from .Price import Price
from .PriceAggregator import AggregationResult, PriceAggregator, median
from .PriceFeeder import PriceFeeder
from .RelayAdapter import RelayAdapter, RelayError
from .RequestFeeder import RequestFeeder
from .SourceManager import SourceManager, SourceStatus
from .Submitter import Submitter, SubmitterConfig
from .TradingPair import TradingPair

__all__ = [
    "MAX_ORACLES",
    "AggregatedFeed",
    "AggregationResult",
    "Aggregator",
    "AggregatorConfig",
    "Answer",
    "ChainClient",
    "ChainClientError",
    "CodecError",
    "ConfigError",
    "DeployInfo",
    "ErrorNotifier",
    "FluxAggregator",
    "NodeConfig",
    "Oracle",
    "Price",
    "PriceAggregator",
    "PriceFeeder",
    "ProgramErrorCode",
    "ProgramRejectedError",
    "RelayAdapter",
    "RelayError",
    "RequestFeeder",
    "Requester",
    "Round",
    "SourceManager",
    "SourceStatus",
    "Submission",
    "Submissions",
    "Submitter",
    "SubmitterConfig",
    "TradingPair",
    "TransactionError",
    "decode_instruction",
    "encode_instruction",
    "median",
    "to_pubkey",
]
