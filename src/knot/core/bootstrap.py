"""
Runtime bootstrap.

Called once by an entry point at launch: prepares the data directory,
configures JSON logging and wires the credential store, endpoint registry and
passkey verifier shared by the rest of the process.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from knot.core import config
from knot.core.endpoints import EndpointRegistry
from knot.core.knot_exceptions import BootstrapError, ConfigurationError
from knot.core.logging_config import setup_logging
from knot.mobile.credential_store import SECURE_DIR_MODE, FileCredentialStore
from knot.mobile.passkey_verifier import PasskeyRelyingParty, PasskeyVerifier

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    data_dir: str
    credential_store: FileCredentialStore
    endpoints: EndpointRegistry
    relying_party: PasskeyRelyingParty
    verifier: PasskeyVerifier


def initialize_runtime(
    data_dir: Optional[str] = None,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    environment: Optional[str] = None,
    enable_console: bool = True,
) -> RuntimeContext:
    """
    Prepare process-wide state.

    Raises:
        BootstrapError: The data directory, logging, endpoints or execution
            limits could not be set up
    """
    data_dir = data_dir or config.DATA_DIR
    try:
        os.makedirs(data_dir, mode=SECURE_DIR_MODE, exist_ok=True)
    except OSError as exc:
        raise BootstrapError(
            f"Cannot create data directory {data_dir}: {exc}",
            details={"data_dir": data_dir},
        ) from exc

    try:
        setup_logging(
            name="knot",
            log_file=log_file if log_file is not None else config.LOG_FILE,
            level=log_level or config.LOG_LEVEL,
            environment=environment or config.NETWORK,
            enable_console=enable_console,
        )
    except (ValueError, OSError) as exc:
        raise BootstrapError(f"Logging setup failed: {exc}") from exc

    try:
        endpoints = EndpointRegistry.from_templates()
    except ConfigurationError as exc:
        raise BootstrapError(f"Endpoint configuration invalid: {exc.message}") from exc

    try:
        limits = {
            "max_revert_data": config.accumulator_max_revert_data(),
            "call_gas_limit": config.accumulator_call_gas_limit(),
            "block_gas_limit": config.block_gas_limit(),
        }
    except ConfigurationError as exc:
        raise BootstrapError(f"Execution limits invalid: {exc.message}", details=exc.details) from exc

    relying_party = PasskeyRelyingParty(config.RP_ID, config.RP_NAME)
    context = RuntimeContext(
        data_dir=data_dir,
        credential_store=FileCredentialStore(os.path.join(data_dir, "credentials")),
        endpoints=endpoints,
        relying_party=relying_party,
        verifier=PasskeyVerifier(relying_party, config.ALLOWED_ORIGINS),
    )
    logger.info(
        "Runtime initialized",
        extra={
            "event": "bootstrap.initialized",
            "network": config.NETWORK,
            "chains": endpoints.supported_chains(),
            **limits,
        },
    )
    return context
