# chainproof/services/source_service.py
"""
Obtención de código fuente verificado desde exploradores tipo Etherscan.

Se usa cuando la auditoría se creó sólo con ``source_address`` + ``network``.
"""
import json
import os
from typing import Any, Dict, Optional

import requests
from web3 import Web3

from chainproof.errors import SourceFetchError

# network -> (chain_id, api_url)
SUPPORTED_NETWORKS: Dict[str, Dict[str, Any]] = {
    "ethereum": {"name": "Ethereum Mainnet", "chain_id": 1, "api_url": "https://api.etherscan.io/api"},
    "base": {"name": "Base Mainnet", "chain_id": 8453, "api_url": "https://api.basescan.org/api"},
    "polygon": {"name": "Polygon Mainnet", "chain_id": 137, "api_url": "https://api.polygonscan.com/api"},
    "arbitrum": {"name": "Arbitrum One", "chain_id": 42161, "api_url": "https://api.arbiscan.io/api"},
    "optimism": {"name": "Optimism Mainnet", "chain_id": 10, "api_url": "https://api-optimistic.etherscan.io/api"},
    "sepolia": {"name": "Sepolia Testnet", "chain_id": 11155111, "api_url": "https://api-sepolia.etherscan.io/api"},
    "baseSepolia": {"name": "Base Sepolia Testnet", "chain_id": 84532, "api_url": "https://api-sepolia.basescan.org/api"},
}


def _network_config(network: str) -> Dict[str, Any]:
    cfg = SUPPORTED_NETWORKS.get(network)
    if not cfg:
        raise SourceFetchError(f"Unsupported network: {network}")
    return cfg


def _parse_multi_file(source: str, contract_name: str) -> str:
    """
    Fuentes multi-archivo llegan como ``{{ ...standard-json... }}``.
    Devuelve el archivo del contrato principal (o el primero .sol).
    """
    try:
        parsed = json.loads(source[1:-1])
    except json.JSONDecodeError:
        return source
    sources = parsed.get("sources") or {}
    main = next((k for k in sources if contract_name and contract_name in k), None)
    if main is None:
        main = next((k for k in sources if k.endswith(".sol")), None)
    if main and sources[main].get("content"):
        return sources[main]["content"]
    return source


def _parse_result(data: dict) -> Dict[str, Any]:
    if str(data.get("status")) != "1":
        raise SourceFetchError(f"Explorer error: {data.get('message')}: {data.get('result')}")

    result = data.get("result")
    if not isinstance(result, list) or not result or not isinstance(result[0], dict):
        raise SourceFetchError(f"Could not interpret explorer response: {data}")
    info = result[0]

    source = info.get("SourceCode") or ""
    if not source:
        raise SourceFetchError("Contract source code not available or not verified")
    name = info.get("ContractName") or ""
    if source.startswith("{{"):
        source = _parse_multi_file(source, name)

    try:
        abi = json.loads(info.get("ABI") or "[]")
    except json.JSONDecodeError:
        abi = []

    return {
        "source_code": source,
        "contract_name": name,
        "compiler_version": info.get("CompilerVersion"),
        "optimization_enabled": info.get("OptimizationUsed") == "1",
        "abi": abi if isinstance(abi, list) else [],
    }


def fetch_verified_source(address: str, network: str = "ethereum",
                          api_key: Optional[str] = None, timeout: int = 20) -> Dict[str, Any]:
    """
    Fetch verified source from the network's explorer (``getsourcecode``).
    Requires an API key (argument, EXPLORER_API_KEY or ETHERSCAN_API_KEY).
    """
    cfg = _network_config(network)
    key = api_key or os.getenv("EXPLORER_API_KEY") or os.getenv("ETHERSCAN_API_KEY")
    if not key:
        raise SourceFetchError("EXPLORER_API_KEY is not set")

    params = {
        "module": "contract",
        "action": "getsourcecode",
        "address": Web3.to_checksum_address(address),
        "apikey": key,
    }
    try:
        resp = requests.get(cfg["api_url"], params=params, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise SourceFetchError(f"Failed to fetch contract source code: {e}") from e

    parsed = _parse_result(data)
    parsed["chain_id"] = cfg["chain_id"]
    return parsed
