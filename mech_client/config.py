"""Per-chain configuration and private key resolution."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .types import is_zero_address, looks_like_address

logger = logging.getLogger(__name__)

MECH_CONFIGS_PATH = Path(__file__).resolve().parent / "configs" / "mechs.json"
PRIVATE_KEY_FILE_PATH = "ethereum_private_key.txt"
DEFAULT_KEY_ENV = "MECH_PRIVATE_KEY"


class LedgerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    chain_id: int
    poa_chain: bool = False
    default_gas_price_strategy: str = "eip1559"
    is_gas_estimation_enabled: bool = False


class MechConfig(BaseModel):
    """Static settings for one chain: RPC endpoint, contracts and gas defaults."""

    model_config = ConfigDict(frozen=True)

    name: str
    rpc_url: str
    ledger_config: LedgerConfig
    gas_limit: int = Field(gt=0)
    price: int = 0
    transaction_url: str
    subgraph_url: str = ""
    mech_marketplace_contract: str = ""
    priority_mech_address: Optional[str] = None
    response_timeout: int = 300
    payment_data: str = "0x"

    @field_validator("mech_marketplace_contract")
    @classmethod
    def _check_marketplace(cls, value: str) -> str:
        if value and not looks_like_address(value):
            raise ValueError(f"not an address: {value!r}")
        return value

    @property
    def chain_id(self) -> int:
        return self.ledger_config.chain_id

    def require_marketplace(self) -> str:
        address = self.mech_marketplace_contract
        if not address or is_zero_address(address):
            raise ConfigurationError(f"Mech marketplace contract is not configured for chain '{self.name}'")
        return address

    def tx_url(self, tx_hash: str) -> str:
        return self.transaction_url.replace("{transaction_digest}", tx_hash)


def _coerce_int(value: str, key: str) -> Optional[int]:
    try:
        return int(value, 10)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed integer override %s=%r", key, value)
        return None


def _coerce_bool(value: str, key: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    logger.warning("Ignoring malformed boolean override %s=%r", key, value)
    return None


def _config_path() -> Path:
    raw = os.getenv("MECHX_CONFIG_PATH")
    if raw:
        return Path(raw).expanduser()
    return MECH_CONFIGS_PATH


@lru_cache(maxsize=4)
def _load_raw(path: Path) -> Dict[str, Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Mech config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Mech config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not payload:
        raise ConfigurationError(f"Mech config file {path} holds no chain entries")
    return payload


def _apply_env_overrides(entry: Dict[str, Any]) -> Dict[str, Any]:
    entry = dict(entry)
    ledger = dict(entry.get("ledger_config") or {})

    rpc_url = os.getenv("MECHX_CHAIN_RPC") or os.getenv("RPC_URL")
    if rpc_url:
        entry["rpc_url"] = rpc_url
        ledger["address"] = rpc_url
    for key, field in (
        ("MECHX_TRANSACTION_URL", "transaction_url"),
        ("MECHX_SUBGRAPH_URL", "subgraph_url"),
        ("MECHX_MECH_MARKETPLACE_CONTRACT", "mech_marketplace_contract"),
    ):
        value = os.getenv(key)
        if value:
            entry[field] = value
    gas_limit = os.getenv("MECHX_GAS_LIMIT")
    if gas_limit:
        parsed = _coerce_int(gas_limit, "MECHX_GAS_LIMIT")
        if parsed is not None:
            entry["gas_limit"] = parsed

    chain_id = os.getenv("MECHX_LEDGER_CHAIN_ID")
    if chain_id:
        parsed = _coerce_int(chain_id, "MECHX_LEDGER_CHAIN_ID")
        if parsed is not None:
            ledger["chain_id"] = parsed
    for key, field in (
        ("MECHX_LEDGER_POA_CHAIN", "poa_chain"),
        ("MECHX_LEDGER_IS_GAS_ESTIMATION_ENABLED", "is_gas_estimation_enabled"),
    ):
        value = os.getenv(key)
        if value:
            flag = _coerce_bool(value, key)
            if flag is not None:
                ledger[field] = flag
    strategy = os.getenv("MECHX_LEDGER_DEFAULT_GAS_PRICE_STRATEGY")
    if strategy:
        ledger["default_gas_price_strategy"] = strategy

    entry["ledger_config"] = ledger
    return entry


def available_chains() -> list[str]:
    return list(_load_raw(_config_path()))


def get_mech_config(chain_config: Optional[str] = None) -> MechConfig:
    """Return the configuration for ``chain_config`` (first entry when omitted)."""

    raw = _load_raw(_config_path())
    name = chain_config or next(iter(raw))
    if name not in raw:
        raise ConfigurationError(f"Chain config '{name}' not found in mechs.json")
    entry = _apply_env_overrides(raw[name])
    entry["name"] = name
    try:
        return MechConfig.model_validate(entry)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration for chain '{name}': {exc}") from exc


def clear_config_cache() -> None:
    _load_raw.cache_clear()


@dataclass(frozen=True, slots=True)
class KeyConfig:
    """Where to read the signing key from."""

    source: Literal["value", "file", "env", "operate"]
    value: Optional[str] = None
    file_path: Optional[str] = None
    env_var: Optional[str] = None
    operate_dir: Optional[str] = None


def _read_key_file(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()


def _resolve_operate_key(operate_dir: Optional[str] = None) -> str:
    base_dir = Path(operate_dir or os.getenv("OPERATE_HOME") or Path.home() / ".operate").expanduser()
    if not base_dir.exists():
        raise ConfigurationError(f"Operate directory not found: {base_dir}")
    services_dir = base_dir / "services"
    if not services_dir.is_dir():
        raise ConfigurationError(f"Services directory not found in {base_dir}")
    service_dirs = sorted(p for p in services_dir.iterdir() if p.name.startswith("sc-") and p.is_dir())
    if not service_dirs:
        raise ConfigurationError("No service directories found in .operate")
    keys_path = service_dirs[0] / "keys.json"
    if not keys_path.exists():
        raise ConfigurationError(f"keys.json not found at {keys_path}")
    try:
        keys = json.loads(keys_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Failed to parse keys.json at {keys_path}: {exc}") from exc
    if not isinstance(keys, list) or not keys:
        raise ConfigurationError("keys.json is empty or not an array")
    for entry in keys:
        if isinstance(entry, dict) and entry.get("ledger") == "ethereum" and entry.get("private_key"):
            return str(entry["private_key"]).strip()
    raise ConfigurationError("No ethereum key found in keys.json")


def resolve_private_key(key_config: Optional[KeyConfig] = None, legacy_path: Optional[str] = None) -> str:
    """Resolve a private key from an explicit source or the legacy fallbacks.

    Without ``key_config`` the lookup order is the key file, then
    ``MECH_PRIVATE_KEY``, then the first service under the operate directory.
    """

    if key_config is not None:
        if key_config.source == "value":
            if not (key_config.value or "").strip():
                raise ConfigurationError("KeyConfig source set to value but no value provided")
            return key_config.value.strip()
        if key_config.source == "file":
            path = Path(key_config.file_path or PRIVATE_KEY_FILE_PATH)
            if not path.exists():
                raise ConfigurationError(f"Private key file not found at {path}")
            return _read_key_file(path)
        if key_config.source == "env":
            env_var = key_config.env_var or DEFAULT_KEY_ENV
            env_value = (os.getenv(env_var) or "").strip()
            if not env_value:
                raise ConfigurationError(f"Environment variable {env_var} not set or empty")
            return env_value
        if key_config.source == "operate":
            return _resolve_operate_key(key_config.operate_dir)
        raise ConfigurationError(f"Unsupported KeyConfig source {key_config.source!r}")

    path = Path(legacy_path or PRIVATE_KEY_FILE_PATH)
    if path.exists():
        return _read_key_file(path)
    env_value = (os.getenv(DEFAULT_KEY_ENV) or "").strip()
    if env_value:
        return env_value
    try:
        return _resolve_operate_key()
    except ConfigurationError as exc:
        logger.debug("No operate key available: %s", exc)
    raise ConfigurationError(
        "No private key found. Provide a KeyConfig, set MECH_PRIVATE_KEY, "
        "supply a key file, or configure an .operate directory."
    )


def load_account(key_config: Optional[KeyConfig] = None, legacy_path: Optional[str] = None) -> LocalAccount:
    key = resolve_private_key(key_config, legacy_path)
    try:
        return Account.from_key(key)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Resolved private key is not a valid secp256k1 key") from exc


__all__ = [
    "DEFAULT_KEY_ENV",
    "KeyConfig",
    "LedgerConfig",
    "MECH_CONFIGS_PATH",
    "MechConfig",
    "PRIVATE_KEY_FILE_PATH",
    "available_chains",
    "clear_config_cache",
    "get_mech_config",
    "load_account",
    "resolve_private_key",
]
