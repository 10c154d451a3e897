"""
Gas price recommendations - EIP-1559 fee fields with a legacy gasPrice fallback
"""
import logging
from typing import Any, Dict, Optional

from web3 import AsyncWeb3, Web3

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_FEE = Web3.to_wei(1, "gwei")
GAS_LIMIT_BUFFER_PERCENT = 20
GAS_LIMIT_CAP = 10_000_000


def to_gwei_string(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return str(Web3.from_wei(value, "gwei"))


async def get_gas_recommendation(w3: AsyncWeb3) -> Dict[str, Any]:
    """
    Fee recommendation for the next transaction

    Prefers EIP-1559 fields when the latest block carries baseFeePerGas,
    otherwise falls back to the node's legacy gas price.

    Returns:
        {
            'supports1559': bool,
            'maxFeePerGas': int (optional),
            'maxPriorityFeePerGas': int (optional),
            'legacyGasPrice': int (optional),
            'source': str
        }
    """
    latest_block = await w3.eth.get_block("latest")
    base_fee = latest_block.get("baseFeePerGas")

    if base_fee is not None:
        try:
            priority_fee = await w3.eth.max_priority_fee
        except Exception as e:
            logger.debug(f"eth_maxPriorityFeePerGas unavailable, using default: {e}")
            priority_fee = DEFAULT_PRIORITY_FEE

        # Room for two consecutive full blocks of base fee increases
        max_fee_per_gas = base_fee * 2 + priority_fee
        return {
            "supports1559": True,
            "maxFeePerGas": max_fee_per_gas,
            "maxPriorityFeePerGas": priority_fee,
            "legacyGasPrice": None,
            "source": "block.baseFeePerGas",
        }

    gas_price = await w3.eth.gas_price
    return {
        "supports1559": False,
        "maxFeePerGas": None,
        "maxPriorityFeePerGas": None,
        "legacyGasPrice": gas_price,
        "source": "eth.gas_price",
    }


def apply_gas_fields(tx: Dict[str, Any], recommendation: Dict[str, Any]) -> Dict[str, Any]:
    """Copy the recommended fee fields onto a transaction dict"""
    if recommendation["supports1559"]:
        tx["maxFeePerGas"] = recommendation["maxFeePerGas"]
        tx["maxPriorityFeePerGas"] = recommendation["maxPriorityFeePerGas"]
    else:
        tx["gasPrice"] = recommendation["legacyGasPrice"]
    return tx


def buffered_gas_limit(estimate: int, buffer_percent: int = GAS_LIMIT_BUFFER_PERCENT, cap: int = GAS_LIMIT_CAP) -> int:
    """Gas estimate plus a safety buffer, capped"""
    return min(estimate * (100 + buffer_percent) // 100, cap)
