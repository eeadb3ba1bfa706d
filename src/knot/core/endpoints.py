"""
Endpoint registry: chain ID -> RPC, bundler and paymaster URLs.

Endpoints are rendered from URL templates (see :mod:`knot.core.config`) for
every known chain, or supplied explicitly. Lookups for unconfigured chains
raise :class:`knot.core.knot_exceptions.UnknownChain`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from knot.core import config
from knot.core.knot_exceptions import ConfigurationError, UnknownChain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainDefinition:
    chain_id: int
    slug: str
    name: str
    is_testnet: bool = False
    explorer_base_url: Optional[str] = None
    wrapped_native_token: Optional[str] = None


@dataclass(frozen=True)
class ChainEndpoints:
    rpc_url: str
    bundler_url: str
    paymaster_url: str


KNOWN_CHAINS: Dict[int, ChainDefinition] = {
    chain.chain_id: chain
    for chain in (
        ChainDefinition(1, "eth-mainnet", "Ethereum", False, "https://etherscan.io",
                        "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"),
        ChainDefinition(11_155_111, "eth-sepolia", "Sepolia", True, "https://sepolia.etherscan.io",
                        "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14"),
        ChainDefinition(10, "opt-mainnet", "Optimism", False, "https://optimistic.etherscan.io",
                        "0x4200000000000000000000000000000000000006"),
        ChainDefinition(11_155_420, "opt-sepolia", "Optimism Sepolia", True,
                        "https://sepolia-optimism.etherscan.io",
                        "0x4200000000000000000000000000000000000006"),
        ChainDefinition(137, "polygon-mainnet", "Polygon", False, "https://polygonscan.com",
                        "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619"),
        ChainDefinition(8453, "base-mainnet", "Base", False, "https://basescan.org",
                        "0x4200000000000000000000000000000000000006"),
        ChainDefinition(84532, "base-sepolia", "Base Sepolia", True, "https://sepolia.basescan.org",
                        "0x4200000000000000000000000000000000000006"),
        ChainDefinition(42161, "arb-mainnet", "Arbitrum", False, "https://arbiscan.io",
                        "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"),
        ChainDefinition(421_614, "arb-sepolia", "Arbitrum Sepolia", True, "https://sepolia.arbiscan.io",
                        "0x980B62Da83eFf3D4576C647993b0c1D7faf17c73"),
    )
}


class EndpointRegistry:
    """Lookup of per-chain endpoints."""

    def __init__(self, endpoints: Mapping[int, ChainEndpoints]) -> None:
        self._endpoints: Dict[int, ChainEndpoints] = dict(endpoints)

    @classmethod
    def from_templates(
        cls,
        chain_ids: Optional[Iterable[int]] = None,
        rpc_template: Optional[str] = None,
        bundler_template: Optional[str] = None,
        paymaster_template: Optional[str] = None,
        api_key: Optional[str] = None,
        include_testnets: Optional[bool] = None,
    ) -> "EndpointRegistry":
        """
        Render endpoints for known chains from URL templates.

        Templates may reference ``{slug}``, ``{chain_id}`` and ``{api_key}``.
        Without explicit ``chain_ids`` every known chain is included; testnets
        are included unless the configured network is mainnet.

        Raises:
            UnknownChain: A requested chain has no definition
            ConfigurationError: A template references an unknown placeholder
        """
        rpc_template = rpc_template or config.RPC_URL_TEMPLATE
        bundler_template = bundler_template or config.BUNDLER_URL_TEMPLATE
        paymaster_template = paymaster_template or config.PAYMASTER_URL_TEMPLATE
        api_key = config.rpc_api_key() if api_key is None else api_key
        if include_testnets is None:
            include_testnets = config.NETWORK.lower() != "mainnet"

        if chain_ids is None:
            definitions = [
                chain for chain in KNOWN_CHAINS.values()
                if include_testnets or not chain.is_testnet
            ]
        else:
            definitions = []
            for chain_id in chain_ids:
                if chain_id not in KNOWN_CHAINS:
                    raise UnknownChain(chain_id)
                definitions.append(KNOWN_CHAINS[chain_id])

        endpoints = {}
        for chain in definitions:
            values = {"slug": chain.slug, "chain_id": chain.chain_id, "api_key": api_key}
            try:
                endpoints[chain.chain_id] = ChainEndpoints(
                    rpc_url=rpc_template.format(**values),
                    bundler_url=bundler_template.format(**values),
                    paymaster_url=paymaster_template.format(**values),
                )
            except (KeyError, IndexError) as exc:
                raise ConfigurationError(
                    f"Endpoint template references unknown placeholder: {exc}",
                    details={"chain_id": chain.chain_id},
                ) from exc

        logger.debug(
            "Rendered endpoints for %d chains",
            len(endpoints),
            extra={"event": "endpoints.rendered", "chains": sorted(endpoints)},
        )
        return cls(endpoints)

    def resolve(self, chain_id: int) -> ChainEndpoints:
        try:
            return self._endpoints[chain_id]
        except KeyError:
            raise UnknownChain(chain_id) from None

    def supported_chains(self) -> List[int]:
        return sorted(self._endpoints)

    def chain_definition(self, chain_id: int) -> ChainDefinition:
        if chain_id not in KNOWN_CHAINS:
            raise UnknownChain(chain_id)
        return KNOWN_CHAINS[chain_id]
