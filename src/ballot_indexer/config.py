"""
This module loads the indexer settings from the environment.

Values come from the process environment, layered over a `.env` file when
one exists. Durations are configured in milliseconds, like the
provider limits they are usually copied from, and exposed in seconds.
"""
from typing import Mapping
import json
import os
import re

import pydantic
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# setting name -> environment variables, first one set wins
ENV_VARS = {
    "rpc_url": ("RPC_URL", "SEPOLIA_RPC_URL"),
    "source_address": ("BALLOT_ADDRESS",),
    "network_id": ("CHAIN_ID",),
    "deployment_block": ("DEPLOYMENT_BLOCK",),
    "db_path": ("INDEXER_DB_PATH",),
    "max_range_width": ("MAX_LOG_BLOCK_RANGE",),
    "confirmations": ("CONFIRMATIONS",),
    "throttle_ms": ("RPC_THROTTLE_MS",),
    "max_retries": ("RPC_MAX_RETRIES",),
    "backoff_base_ms": ("RPC_BACKOFF_BASE_MS",),
    "backoff_cap_ms": ("RPC_BACKOFF_CAP_MS",),
    "request_timeout": ("RPC_TIMEOUT_S",),
    "poll_interval_ms": ("POLL_INTERVAL_MS",),
    "initial_lookback": ("INITIAL_LOOKBACK",),
    "abi_path": ("BALLOT_ABI_PATH",),
    "address_path": ("BALLOT_ADDRESS_PATH",),
    "log_level": ("LOG_LEVEL",),
}


class IndexerConfig(BaseModel):
    rpc_url: str
    source_address: str
    network_id: int = Field(default=11155111, gt=0)
    deployment_block: int | None = Field(default=None, ge=0)
    db_path: str = "indexer.db"
    max_range_width: int = Field(default=10, ge=1)
    confirmations: int = Field(default=2, ge=0)
    throttle_ms: int = Field(default=400, ge=0)
    max_retries: int = Field(default=8, ge=0)
    backoff_base_ms: int = Field(default=1500, ge=0)
    backoff_cap_ms: int = Field(default=30000, ge=0)
    request_timeout: float = Field(default=20.0, gt=0)
    poll_interval_ms: int = Field(default=15000, ge=0)
    initial_lookback: int = Field(default=100, ge=0)
    abi_path: str | None = None
    address_path: str | None = None
    log_level: str = "INFO"

    @field_validator("rpc_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("rpc_url must be an http(s) URL")
        return value

    @field_validator("source_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not _ADDRESS_RE.match(value):
            raise ValueError(f"{value!r} is not a 20-byte hex address")
        return value.lower()

    @field_validator("deployment_block")
    @classmethod
    def _check_deployment_block(cls, value: int | None) -> int | None:
        # 0 means the deployment block is unknown.
        return value or None

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {value!r}")
        return value

    @property
    def throttle(self) -> float:
        return self.throttle_ms / 1000

    @property
    def backoff_base(self) -> float:
        return self.backoff_base_ms / 1000

    @property
    def backoff_cap(self) -> float:
        return self.backoff_cap_ms / 1000

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, env_file: str | None = None
    ) -> "IndexerConfig":
        """
        Builds the settings from `environ`, or from the process environment
        layered over `env_file` (default: the nearest `.env` from the working
        directory). Process variables win over the file. Empty variables count
        as unset.
        """
        if environ is None:
            file_values = dotenv_values(env_file or find_dotenv(usecwd=True))
            environ = {**file_values, **os.environ}

        values = {}
        for field, names in ENV_VARS.items():
            for name in names:
                raw = environ.get(name)
                if raw is not None and raw.strip() != "":
                    values[field] = raw.strip()
                    break

        if "source_address" not in values and "address_path" in values:
            values["source_address"] = load_address_file(values["address_path"])

        missing = [ENV_VARS[f][0] for f in ("rpc_url", "source_address") if f not in values]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")
        try:
            return cls(**values)
        except pydantic.ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e


def load_address_file(path: str) -> str:
    """Reads the contract address from a deployment file such as `Ballot.address.json`."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            metadata = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read contract address from {path}: {e}") from e
    address = metadata.get("address") if isinstance(metadata, dict) else None
    if not isinstance(address, str) or not address.strip():
        raise ConfigurationError(f"{path} is missing the 'address' field")
    return address.strip()
