"""
Agent configuration - environment variables parsed into an immutable settings model
"""
import json
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .chains import (
    DEFAULT_CHAIN_ID,
    TOKEN_ADDRESSES,
    TOKEN_DECIMALS,
    UNISWAP_V3_ADDRESSES,
)
from .errors import ConfigurationError
from .helpers import is_valid_address, is_valid_private_key
from .models import AgentIdentity

logger = logging.getLogger(__name__)

AGENT_TYPE_ALIASES: Dict[str, str] = {
    "fund_manager": "fund_manager",
    "fundmanager": "fund_manager",
    "fund-manager": "fund_manager",
    "manager": "fund_manager",
    "dex_swap": "dex_swap",
    "dexswap": "dex_swap",
    "dex-swap": "dex_swap",
    "swap": "dex_swap",
    "arbitrage": "dex_swap",
}

# (volatility bucket, trend) -> (strategy class, risk factor)
DEFAULT_DECISION_TABLE: Dict[str, Dict[str, Tuple[str, float]]] = {
    "high": {
        "down": ("DCA", 0.2),
        "neutral": ("Arbitrage", 0.35),
        "up": ("Arbitrage", 0.5),
    },
    "medium": {
        "down": ("MeanReversion", 0.4),
        "neutral": ("Yield", 0.5),
        "up": ("Momentum", 0.65),
    },
    "low": {
        "down": ("MeanReversion", 0.5),
        "neutral": ("DCA", 0.6),
        "up": ("Momentum", 0.85),
    },
}

VOLATILITY_BUCKETS = ("low", "medium", "high")
TRENDS = ("down", "neutral", "up")


class AgentSettings(BaseModel):
    """Validated runtime configuration. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    # Identity
    agent_id: int
    private_key: SecretStr
    agent_type: str = "fund_manager"
    chain_id: int = DEFAULT_CHAIN_ID

    # Contracts
    registry_address: str
    execution_address: str
    permission_address: str

    # Endpoints
    rpc_url: str
    indexer_url: str
    indexer_api_key: Optional[str] = None

    # Runtime
    polling_interval_ms: int = 60000
    receipt_timeout_seconds: float = 120.0
    receipt_poll_seconds: float = 3.0
    stop_grace_seconds: float = 5.0
    ledger_database_url: str = "sqlite:///echelon_ledger.db"
    pending_expiry_seconds: int = 1800
    min_gas_balance_wei: int = 10 ** 15

    # Fund manager
    recent_executions_window: int = 100
    leaderboard_size: int = 50
    min_reputation_score: int = 60
    allocation_fraction: Decimal = Decimal("0.5")
    allocation_duration_seconds: int = 604800
    min_allocation_amount: int = 1000000
    min_history_samples: int = 1
    volatility_scale: float = 20.0
    volatility_low_threshold: float = 0.25
    volatility_high_threshold: float = 0.6
    trend_threshold: float = 0.05
    yield_rate_estimate: float = 5.0
    high_yield_threshold: float = 8.0
    decision_table: Dict[str, Dict[str, Tuple[str, float]]] = Field(
        default_factory=lambda: DEFAULT_DECISION_TABLE
    )

    # Swap
    router_address: str = ""
    quoter_address: str = ""
    token_addresses: Dict[str, str] = Field(default_factory=dict)
    token_decimals: Dict[str, int] = Field(default_factory=lambda: dict(TOKEN_DECIMALS))
    swap_pairs: List[Tuple[str, str]] = Field(
        default_factory=lambda: [("USDC", "WETH"), ("WETH", "USDC")]
    )
    reference_prices: Dict[str, Decimal] = Field(
        default_factory=lambda: {"WETH/USDC": Decimal("2000")}
    )
    slippage_tolerance: Decimal = Decimal("0.005")
    min_profit_percent: Decimal = Decimal("0.5")
    max_swap_amount: int = 100000000
    min_swap_amount: int = 1000000

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval_ms / 1000

    def identity(self, wallet_address: str) -> AgentIdentity:
        return AgentIdentity(
            agent_id=self.agent_id,
            wallet_address=wallet_address,
            private_key=self.private_key,
            registry_address=self.registry_address,
            execution_address=self.execution_address,
            permission_address=self.permission_address,
            chain_id=self.chain_id,
        )

    def reference_price(self, symbol_in: str, symbol_out: str) -> Optional[Decimal]:
        """Units of ``symbol_out`` per whole unit of ``symbol_in``"""
        direct = self.reference_prices.get(f"{symbol_in}/{symbol_out}")
        if direct is not None:
            return direct
        inverse = self.reference_prices.get(f"{symbol_out}/{symbol_in}")
        if inverse:
            return Decimal(1) / inverse
        return None


class _EnvReader:
    """Reads typed values from an environment mapping, collecting every problem"""

    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.problems: List[str] = []

    def raw(self, *names: str) -> Optional[str]:
        for name in names:
            value = self.env.get(name)
            if value is not None and value.strip() != "":
                return value.strip()
        return None

    def required(self, name: str, *aliases: str) -> Optional[str]:
        value = self.raw(name, *aliases)
        if value is None:
            self.problems.append(f"{name} is required")
        return value

    def parsed(self, name: str, default, parser: Callable, check: Optional[Callable] = None, hint: str = ""):
        value = self.raw(name)
        if value is None:
            return default
        try:
            result = parser(value)
        except (ValueError, TypeError, KeyError, InvalidOperation):
            self.problems.append(f"{name} must be {hint or parser.__name__}, got {value!r}")
            return default
        if check is not None and not check(result):
            self.problems.append(f"{name} must be {hint}, got {value!r}")
            return default
        return result

    def address(self, name: str, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_address(value):
            self.problems.append(f"{name} must be a 0x-prefixed 20-byte hex address")
            return None
        return value


def _parse_pairs(value: str) -> List[Tuple[str, str]]:
    pairs = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        symbol_in, sep, symbol_out = item.partition("/")
        if not sep or not symbol_in or not symbol_out:
            raise ValueError(item)
        pairs.append((symbol_in.strip().upper(), symbol_out.strip().upper()))
    if not pairs:
        raise ValueError(value)
    return pairs


def _parse_prices(value: str) -> Dict[str, Decimal]:
    prices = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        pair, sep, price = item.partition("=")
        if not sep:
            raise ValueError(item)
        prices[pair.strip().upper()] = Decimal(price.strip())
    return prices


def _parse_decision_table(value: str) -> Dict[str, Dict[str, Tuple[str, float]]]:
    data = json.loads(value)
    table = {}
    for bucket in VOLATILITY_BUCKETS:
        table[bucket] = {}
        for trend in TRENDS:
            strategy, risk = data[bucket][trend]
            risk = float(risk)
            if not 0.0 <= risk <= 1.0:
                raise ValueError(f"risk factor {risk} for {bucket}/{trend}")
            table[bucket][trend] = (str(strategy), risk)
    return table


def _parse_int(value: str) -> int:
    return int(value, 0) if value.lower().startswith("0x") else int(value)


def _decision_table_problems(table: Dict[str, Dict[str, Tuple[str, float]]]) -> List[str]:
    """Higher volatility must never raise the risk factor for the same trend"""
    problems = []
    for trend in TRENDS:
        risks = [table[bucket][trend][1] for bucket in VOLATILITY_BUCKETS]
        if not (risks[0] >= risks[1] >= risks[2]):
            problems.append(
                f"DECISION_TABLE risk factors for trend '{trend}' must not increase with volatility"
            )
    return problems


def load_settings(env: Optional[Mapping[str, str]] = None, agent_type: Optional[str] = None) -> AgentSettings:
    """
    Build AgentSettings from environment variables

    Args:
        env: Mapping to read from, os.environ when omitted
        agent_type: Overrides AGENT_TYPE

    Raises:
        ConfigurationError: listing every missing or malformed setting
    """
    reader = _EnvReader(os.environ if env is None else env)

    agent_id = reader.parsed(
        "AGENT_ID", None, int, lambda v: v > 0, "a positive integer"
    )
    if reader.raw("AGENT_ID") is None:
        reader.problems.append("AGENT_ID is required")

    private_key = reader.required("AGENT_PRIVATE_KEY")
    if private_key is not None:
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        if not is_valid_private_key(private_key):
            reader.problems.append("AGENT_PRIVATE_KEY must be a 32-byte hex string")
            private_key = None

    registry_address = reader.address("REGISTRY_ADDRESS", reader.required("REGISTRY_ADDRESS"))
    execution_address = reader.address("EXECUTION_ADDRESS", reader.required("EXECUTION_ADDRESS"))
    permission_address = reader.address("PERMISSION_ADDRESS", reader.required("PERMISSION_ADDRESS"))

    rpc_url = reader.required("RPC_URL")
    indexer_url = reader.required("INDEXER_URL", "ENVIO_URL")
    for name, url in (("RPC_URL", rpc_url), ("INDEXER_URL", indexer_url)):
        if url is not None and not url.startswith(("http://", "https://")):
            reader.problems.append(f"{name} must be an http(s) URL")

    raw_type = agent_type or reader.raw("AGENT_TYPE") or "fund_manager"
    resolved_type = AGENT_TYPE_ALIASES.get(raw_type.strip().lower())
    if resolved_type is None:
        reader.problems.append(
            f"AGENT_TYPE must be one of fund_manager, dex_swap, got {raw_type!r}"
        )

    chain_id = reader.parsed("CHAIN_ID", DEFAULT_CHAIN_ID, int, lambda v: v > 0, "a positive integer")
    positive = lambda v: v > 0
    non_negative = lambda v: v >= 0
    fraction = lambda v: 0 <= v <= 1

    values = {
        "polling_interval_ms": reader.parsed("POLLING_INTERVAL_MS", 60000, int, positive, "a positive integer"),
        "receipt_timeout_seconds": reader.parsed("RECEIPT_TIMEOUT_SECONDS", 120.0, float, positive, "a positive number"),
        "receipt_poll_seconds": reader.parsed("RECEIPT_POLL_SECONDS", 3.0, float, positive, "a positive number"),
        "stop_grace_seconds": reader.parsed("STOP_GRACE_SECONDS", 5.0, float, non_negative, "a non-negative number"),
        "pending_expiry_seconds": reader.parsed("PENDING_EXPIRY_SECONDS", 1800, int, positive, "a positive integer"),
        "min_gas_balance_wei": reader.parsed("MIN_GAS_BALANCE_WEI", 10 ** 15, _parse_int, non_negative, "a non-negative integer"),
        "recent_executions_window": reader.parsed("RECENT_EXECUTIONS_WINDOW", 100, int, positive, "a positive integer"),
        "leaderboard_size": reader.parsed("LEADERBOARD_SIZE", 50, int, positive, "a positive integer"),
        "min_reputation_score": reader.parsed("MIN_REPUTATION_SCORE", 60, int, non_negative, "a non-negative integer"),
        "allocation_fraction": reader.parsed("ALLOCATION_FRACTION", Decimal("0.5"), Decimal, fraction, "a number in [0, 1]"),
        "allocation_duration_seconds": reader.parsed("ALLOCATION_DURATION_SECONDS", 604800, int, positive, "a positive integer"),
        "min_allocation_amount": reader.parsed("MIN_ALLOCATION_AMOUNT", 1000000, int, non_negative, "a non-negative integer"),
        "min_history_samples": reader.parsed("MIN_HISTORY_SAMPLES", 1, int, non_negative, "a non-negative integer"),
        "volatility_scale": reader.parsed("VOLATILITY_SCALE", 20.0, float, positive, "a positive number"),
        "volatility_low_threshold": reader.parsed("VOLATILITY_LOW_THRESHOLD", 0.25, float, fraction, "a number in [0, 1]"),
        "volatility_high_threshold": reader.parsed("VOLATILITY_HIGH_THRESHOLD", 0.6, float, fraction, "a number in [0, 1]"),
        "trend_threshold": reader.parsed("TREND_THRESHOLD", 0.05, float, non_negative, "a non-negative number"),
        "yield_rate_estimate": reader.parsed("YIELD_RATE_ESTIMATE", 5.0, float, non_negative, "a non-negative number"),
        "high_yield_threshold": reader.parsed("HIGH_YIELD_THRESHOLD", 8.0, float, non_negative, "a non-negative number"),
        "decision_table": reader.parsed("DECISION_TABLE", DEFAULT_DECISION_TABLE, _parse_decision_table, None, "a JSON decision table"),
        "swap_pairs": reader.parsed("SWAP_PAIRS", [("USDC", "WETH"), ("WETH", "USDC")], _parse_pairs, None, "a list like USDC/WETH,WETH/USDC"),
        "reference_prices": reader.parsed("REFERENCE_PRICES", {"WETH/USDC": Decimal("2000")}, _parse_prices, None, "a list like WETH/USDC=2000"),
        "slippage_tolerance": reader.parsed("SLIPPAGE_TOLERANCE", Decimal("0.005"), Decimal, lambda v: 0 <= v < 1, "a number in [0, 1)"),
        "min_profit_percent": reader.parsed("MIN_PROFIT_PERCENT", Decimal("0.5"), Decimal, None, "a number"),
        "max_swap_amount": reader.parsed("MAX_SWAP_AMOUNT", 100000000, int, positive, "a positive integer"),
        "min_swap_amount": reader.parsed("MIN_SWAP_AMOUNT", 1000000, int, positive, "a positive integer"),
    }

    if values["volatility_low_threshold"] > values["volatility_high_threshold"]:
        reader.problems.append("VOLATILITY_LOW_THRESHOLD must not exceed VOLATILITY_HIGH_THRESHOLD")
    if values["min_swap_amount"] > values["max_swap_amount"]:
        reader.problems.append("MIN_SWAP_AMOUNT must not exceed MAX_SWAP_AMOUNT")
    reader.problems.extend(_decision_table_problems(values["decision_table"]))

    # Swap venue and tokens default to the chain's deployment
    uniswap = UNISWAP_V3_ADDRESSES.get(chain_id, {})
    router_address = reader.address(
        "UNISWAP_ROUTER_ADDRESS", reader.raw("UNISWAP_ROUTER_ADDRESS") or uniswap.get("swap_router")
    )
    quoter_address = reader.address(
        "UNISWAP_QUOTER_ADDRESS", reader.raw("UNISWAP_QUOTER_ADDRESS") or uniswap.get("quoter")
    )
    token_addresses = dict(TOKEN_ADDRESSES.get(chain_id, {}))
    for symbol in ("WETH", "USDC"):
        override = reader.address(f"{symbol}_ADDRESS", reader.raw(f"{symbol}_ADDRESS"))
        if override:
            token_addresses[symbol] = override

    if resolved_type == "dex_swap":
        if not router_address or not quoter_address:
            reader.problems.append(
                f"UNISWAP_ROUTER_ADDRESS and UNISWAP_QUOTER_ADDRESS are required on chain {chain_id}"
            )
        for symbol_in, symbol_out in values["swap_pairs"]:
            for symbol in (symbol_in, symbol_out):
                if symbol not in token_addresses:
                    reader.problems.append(f"No address configured for token {symbol}")
                if symbol not in TOKEN_DECIMALS:
                    reader.problems.append(f"No decimals known for token {symbol}")

    if reader.problems:
        raise ConfigurationError(list(dict.fromkeys(reader.problems)))

    settings = AgentSettings(
        agent_id=agent_id,
        private_key=SecretStr(private_key),
        agent_type=resolved_type,
        chain_id=chain_id,
        registry_address=registry_address,
        execution_address=execution_address,
        permission_address=permission_address,
        rpc_url=rpc_url,
        indexer_url=indexer_url,
        indexer_api_key=reader.raw("INDEXER_API_KEY"),
        ledger_database_url=reader.raw("LEDGER_DATABASE_URL") or "sqlite:///echelon_ledger.db",
        router_address=router_address or "",
        quoter_address=quoter_address or "",
        token_addresses=token_addresses,
        **values
    )
    logger.debug(f"Loaded settings for agent {settings.agent_id} ({settings.agent_type}) on chain {settings.chain_id}")
    return settings
