"""
Chain-specific constants: Uniswap V3 deployments, tokens and pool fee tiers
"""
from typing import Dict

SEPOLIA_CHAIN_ID = 11155111
DEFAULT_CHAIN_ID = SEPOLIA_CHAIN_ID

# Uniswap V3 periphery deployments
UNISWAP_V3_ADDRESSES: Dict[int, Dict[str, str]] = {
    SEPOLIA_CHAIN_ID: {
        "swap_router": "0x3bFA4769FB09eefC5a80d6E87c3B9C650f7Ae48E",  # SwapRouter02
        "quoter": "0xEd1f6473345F45b75F8179591dd5bA1888cf2FB3",  # QuoterV2
        "factory": "0x0227628f3F023bb0B980b67D528571c95c6DaC1c",
    },
}

TOKEN_ADDRESSES: Dict[int, Dict[str, str]] = {
    SEPOLIA_CHAIN_ID: {
        "WETH": "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14",
        "USDC": "0x2BfBc55F4A360352Dc89e599D04898F150472cA6",
        "DAI": "0x68194a729C2450ad26072b3D33ADaCbcef39D574",
        "LINK": "0x779877A7B0D9E8603169DdbD7836e478b4624789",
    },
}

TOKEN_DECIMALS: Dict[str, int] = {
    "WETH": 18,
    "ETH": 18,
    "USDC": 6,
    "DAI": 18,
    "LINK": 18,
}

# Fee tiers in hundredths of a bip
POOL_FEES = {
    "LOWEST": 100,
    "LOW": 500,
    "MEDIUM": 3000,
    "HIGH": 10000,
}

DEFAULT_POOL_FEES: Dict[str, int] = {
    "WETH/USDC": POOL_FEES["MEDIUM"],
    "USDC/WETH": POOL_FEES["MEDIUM"],
    "WETH/DAI": POOL_FEES["MEDIUM"],
    "DAI/WETH": POOL_FEES["MEDIUM"],
}


def get_pool_fee(symbol_in: str, symbol_out: str) -> int:
    """Pool fee tier for a token pair, medium tier when unknown"""
    return DEFAULT_POOL_FEES.get(f"{symbol_in}/{symbol_out}", POOL_FEES["MEDIUM"])
