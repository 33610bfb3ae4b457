"""NodeConfig: Deployment map and submitter settings.

Two JSON files configure a node.

The deployment file, written by provisioning, maps pairs to on-chain
accounts. Public keys are base58 strings, or ``{"type": "PublicKey",
"base58": "..."}`` objects as written by the provisioning tool:

.. code-block:: json

    {
      "programID": "...",
      "aggregators": {
        "btc:usd": {
          "pubkey": "...",
          "owner": "...",
          "oracles": {"solink": {"pubkey": "...", "owner": "..."}},
          "requesters": {"requester": {"pubkey": "...", "owner": "..."}}
        }
      }
    }

The optional node config file holds per-pair submitter settings with a
``default`` fallback:

.. code-block:: json

    {
      "submitter": {
        "default": {"source": ["coinbase", "bitstamp"], "minValueChangeForNewRound": 100},
        "eth:usd": {"minValueChangeForNewRound": 5}
      }
    }

Both are parsed into frozen dataclasses and treated as read-only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from solders.pubkey import Pubkey

from .AccountCodec import CodecError, to_pubkey

logger = logging.getLogger(__name__)

DEFAULT_MIN_VALUE_CHANGE = 0


class ConfigError(ValueError):
    """Raised when a configuration file is missing or malformed."""

    pass


def load_json(path: str | Path) -> Any:
    """Read a JSON file.

    :raises ConfigError: If the file cannot be read or parsed.
    """
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def parse_pubkey(value: Any, where: str) -> Pubkey:
    """Parse a public key from a base58 string or a tagged object.

    :param value: ``"base58"`` or ``{"type": "PublicKey", "base58": "..."}``.
    :param where: Location used in error messages.
    :raises ConfigError: If the value is not a valid public key.
    """
    if isinstance(value, dict) and value.get("type") == "PublicKey":
        value = value.get("base58")
    if not isinstance(value, str):
        raise ConfigError(f"{where}: expected a public key, got {value!r}")
    try:
        return to_pubkey(value)
    except CodecError as e:
        raise ConfigError(f"{where}: {e}") from e


@dataclass(frozen=True)
class AccountInfo:
    """An oracle or requester account and the wallet that owns it."""

    name: str
    pubkey: Pubkey
    owner: Pubkey


def _parse_accounts(entries: Any, where: str) -> dict[str, AccountInfo]:
    if entries is None:
        return {}
    if not isinstance(entries, dict):
        raise ConfigError(f"{where}: expected an object")
    accounts = {}
    for name, entry in entries.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"{where}.{name}: expected an object")
        accounts[name] = AccountInfo(
            name=name,
            pubkey=parse_pubkey(entry.get("pubkey"), f"{where}.{name}.pubkey"),
            owner=parse_pubkey(entry.get("owner"), f"{where}.{name}.owner"),
        )
    return accounts


@dataclass(frozen=True)
class AggregatorInfo:
    """Deployment entry of one pair.

    :ivar pair: Pair name, e.g. ``btc:usd``.
    :ivar pubkey: Aggregator account.
    :ivar oracles: Oracle accounts by name.
    :ivar requesters: Requester accounts by name.
    """

    pair: str
    pubkey: Pubkey
    owner: Pubkey | None = None
    oracles: dict[str, AccountInfo] = field(default_factory=dict)
    requesters: dict[str, AccountInfo] = field(default_factory=dict)

    def find_oracle(self, owner: Pubkey) -> AccountInfo | None:
        """Return the oracle owned by ``owner``, if any."""
        return next((o for o in self.oracles.values() if o.owner == owner), None)

    def find_requester(self, owner: Pubkey) -> AccountInfo | None:
        """Return the requester owned by ``owner``, if any."""
        return next((r for r in self.requesters.values() if r.owner == owner), None)


@dataclass(frozen=True)
class DeployInfo:
    """The deployment map.

    :ivar program_id: Aggregator program address.
    :ivar aggregators: Aggregator entries by pair name.
    """

    program_id: Pubkey
    aggregators: dict[str, AggregatorInfo] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> DeployInfo:
        """Build from parsed JSON.

        An aggregator entry without a ``pubkey`` is skipped with a warning.

        :raises ConfigError: If the map is malformed.
        """
        if not isinstance(data, dict):
            raise ConfigError("Deployment file must contain a JSON object")

        program_id = parse_pubkey(data.get("programID"), "programID")

        raw_aggregators = data.get("aggregators") or {}
        if not isinstance(raw_aggregators, dict):
            raise ConfigError("aggregators: expected an object")

        aggregators: dict[str, AggregatorInfo] = {}
        for pair, entry in raw_aggregators.items():
            where = f"aggregators.{pair}"
            if not isinstance(entry, dict) or entry.get("pubkey") is None:
                logger.warning(f"{pair}: no aggregator account in deployment file, skipping")
                continue

            owner = entry.get("owner")
            aggregators[pair] = AggregatorInfo(
                pair=pair,
                pubkey=parse_pubkey(entry["pubkey"], f"{where}.pubkey"),
                owner=parse_pubkey(owner, f"{where}.owner") if owner is not None else None,
                oracles=_parse_accounts(entry.get("oracles"), f"{where}.oracles"),
                requesters=_parse_accounts(entry.get("requesters"), f"{where}.requesters"),
            )

        return cls(program_id=program_id, aggregators=aggregators)

    @classmethod
    def load(cls, path: str | Path) -> DeployInfo:
        """Load the deployment file.

        :raises ConfigError: If the file is missing or malformed.
        """
        return cls.from_dict(load_json(path))


@dataclass(frozen=True)
class SubmitterSettings:
    """Per-pair submitter settings.

    :ivar sources: Feed names to aggregate, None for every available feed.
    :ivar min_value_change: Minimum change versus the on-chain answer before
        submitting.
    """

    sources: tuple[str, ...] | None = None
    min_value_change: int = DEFAULT_MIN_VALUE_CHANGE


def _parse_settings(
    entry: Any, where: str, fallback: SubmitterSettings
) -> SubmitterSettings:
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: expected an object")

    sources = entry.get("source")
    if sources is not None:
        if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
            raise ConfigError(f"{where}.source: expected a list of feed names")
        sources = tuple(s.lower() for s in sources)
    else:
        sources = fallback.sources

    min_change = entry.get("minValueChangeForNewRound", fallback.min_value_change)
    if isinstance(min_change, bool) or not isinstance(min_change, int) or min_change < 0:
        raise ConfigError(
            f"{where}.minValueChangeForNewRound: expected a non-negative integer"
        )

    return SubmitterSettings(sources=sources, min_value_change=min_change)


@dataclass(frozen=True)
class NodeConfig:
    """Node settings.

    :ivar default: Settings used for pairs without their own entry.
    :ivar pairs: Per-pair settings.
    """

    default: SubmitterSettings = field(default_factory=SubmitterSettings)
    pairs: dict[str, SubmitterSettings] = field(default_factory=dict)

    def submitter_for(self, pair: str) -> SubmitterSettings:
        """Settings for ``pair``, falling back to the default."""
        return self.pairs.get(pair, self.default)

    @classmethod
    def from_dict(cls, data: Any) -> NodeConfig:
        """Build from parsed JSON.

        :raises ConfigError: If the config is malformed.
        """
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a JSON object")

        submitter = data.get("submitter") or {}
        if not isinstance(submitter, dict):
            raise ConfigError("submitter: expected an object")

        default = SubmitterSettings()
        if "default" in submitter:
            default = _parse_settings(submitter["default"], "submitter.default", default)

        pairs = {
            pair: _parse_settings(entry, f"submitter.{pair}", default)
            for pair, entry in submitter.items()
            if pair != "default"
        }
        return cls(default=default, pairs=pairs)

    @classmethod
    def load(cls, path: str | Path | None) -> NodeConfig:
        """Load the config file, or return defaults when no path is given.

        :raises ConfigError: If the file is missing or malformed.
        """
        if not path:
            return cls()
        return cls.from_dict(load_json(path))
