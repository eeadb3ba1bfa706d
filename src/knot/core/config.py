"""
Knot Configuration

Supports testnet and mainnet with separate configurations.

SECURITY NOTICE:
- Endpoint API keys MUST be provided via environment variables
- Never commit API keys to version control
- Use different keys for testnet vs mainnet
"""

from __future__ import annotations

import logging
import os

from .knot_exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _get_int(env_var: str, default: int, minimum: int = 0) -> int:
    """Read an integer setting, rejecting garbage instead of guessing."""
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw, 0)
    except ValueError as exc:
        raise ConfigurationError(
            f"{env_var} must be an integer, got {raw!r}",
            details={"env_var": env_var},
        ) from exc
    if value < minimum:
        raise ConfigurationError(
            f"{env_var} must be >= {minimum}, got {value}",
            details={"env_var": env_var},
        )
    return value


def _get_list(env_var: str) -> list[str]:
    return [item.strip() for item in os.getenv(env_var, "").split(",") if item.strip()]


def _get_api_key(env_var: str, network: str) -> str:
    """Get an endpoint API key from environment, with mainnet enforcement.

    On mainnet, a missing key raises ConfigurationError.
    On testnet, a missing key yields public endpoints with a warning.
    """
    value = os.getenv(env_var, "").strip()
    if value:
        return value

    if network.lower() == "mainnet":
        raise ConfigurationError(
            f"CRITICAL: {env_var} environment variable required for mainnet.",
            details={"env_var": env_var},
        )

    logger.warning(
        "%s not set, endpoint templates will be rendered without an API key",
        env_var,
        extra={"event": "config.api_key_missing", "env_var": env_var},
    )
    return ""


# Get network type from environment variable
NETWORK = os.getenv("KNOT_NETWORK", "testnet")  # Default to testnet for safety

# Relying party the passkeys are scoped to
RP_ID = os.getenv("KNOT_RP_ID", "knot.fi")
RP_NAME = os.getenv("KNOT_RP_NAME", "Knot")
ALLOWED_ORIGINS = _get_list("KNOT_ALLOWED_ORIGINS") or [f"https://{RP_ID}"]

# Credential store namespaces
KEYCHAIN_SERVICE = os.getenv("KNOT_KEYCHAIN_SERVICE", "fi.knot.keychain")
WALLET_SEED_SERVICE = os.getenv("KNOT_WALLET_SEED_SERVICE", "fi.knot.wallet.seed")
ACCOUNTS_RECORD_KEY = "accounts.v2"


# Accumulator execution limits, read when a ledger or accumulator is built
def accumulator_max_revert_data() -> int:
    return _get_int("KNOT_ACCUMULATOR_MAX_REVERT_DATA", 1024)


def accumulator_call_gas_limit() -> int:
    return _get_int("KNOT_ACCUMULATOR_CALL_GAS_LIMIT", 0)


def block_gas_limit() -> int:
    return _get_int("KNOT_BLOCK_GAS_LIMIT", 30_000_000, minimum=1)


# Endpoint templates; {slug}, {chain_id} and {api_key} are substituted per chain
RPC_URL_TEMPLATE = os.getenv(
    "KNOT_RPC_URL_TEMPLATE", "https://{slug}.g.alchemy.com/v2/{api_key}"
)
BUNDLER_URL_TEMPLATE = os.getenv(
    "KNOT_BUNDLER_URL_TEMPLATE", "https://api.pimlico.io/v2/{chain_id}/rpc?apikey={api_key}"
)
PAYMASTER_URL_TEMPLATE = os.getenv(
    "KNOT_PAYMASTER_URL_TEMPLATE", "https://api.pimlico.io/v2/{chain_id}/rpc?apikey={api_key}"
)


def rpc_api_key() -> str:
    """Endpoint API key; raises ConfigurationError on mainnet when unset."""
    return _get_api_key("KNOT_RPC_API_KEY", NETWORK)


# Runtime bootstrap
LOG_LEVEL = os.getenv("KNOT_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("KNOT_LOG_FILE", "").strip() or None
DATA_DIR = os.getenv("KNOT_DATA_DIR", os.path.join(os.getcwd(), "knot_data"))

# CREATE2 parameters for per-account accumulator addresses
ACCUMULATOR_FACTORY_ADDRESS = os.getenv(
    "KNOT_ACCUMULATOR_FACTORY_ADDRESS", "0x4e59b44847b379578588920cA78FbF26c0B4956C"
)
ACCUMULATOR_INIT_CODE_HASH = os.getenv(
    "KNOT_ACCUMULATOR_INIT_CODE_HASH", "0x" + "00" * 32
)
