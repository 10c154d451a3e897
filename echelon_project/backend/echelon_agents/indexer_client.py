"""
Indexer Client - typed, read-only access to the agent indexer's GraphQL API

Results lag the chain head; nothing read here is authoritative for sizing a
transaction.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .errors import IndexerSchemaError, IndexerUnavailableError
from .helpers import execute_with_retry
from .models import (
    AgentPerformance,
    IndexedAgent,
    IndexedExecution,
    Permission,
    SpecialistAgent,
)

logger = logging.getLogger(__name__)

# ============================================
# GraphQL queries
# ============================================

LEADERBOARD_QUERY = """
query GetLeaderboard($first: Int!) {
  agents(first: $first, orderBy: reputationScore, orderDirection: desc, where: { isActive: true }) {
    id
    walletAddress
    name
    strategyType
    riskLevel
    reputationScore
    winRate
    totalExecutions
    totalProfitLoss
  }
}
"""

AGENT_PERMISSIONS_QUERY = """
query GetAgentPermissions($agentId: ID!) {
  agent(id: $agentId) {
    permissionsReceived(where: { isActive: true }) {
      id
      user { id }
      agent { id }
      permissionType
      tokenAddress
      tokenSymbol
      amountPerPeriod
      periodDuration
      totalAmount
      grantedAt
      expiresAt
      revokedAt
      isActive
      amountUsed
      amountRemaining
    }
  }
}
"""

_EXECUTION_FIELDS = """
    id
    agent { id name }
    user { id }
    amountIn
    amountOut
    tokenIn
    tokenOut
    profitLoss
    profitLossPercent
    result
    startedAt
    completedAt
    startTxHash
    completeTxHash
"""

RECENT_EXECUTIONS_QUERY = """
query GetRecentExecutions($first: Int!) {
  executions(first: $first, orderBy: startedAt, orderDirection: desc, where: { result_not: PENDING }) {%s  }
}
""" % _EXECUTION_FIELDS

AGENT_RECENT_EXECUTIONS_QUERY = """
query GetAgentRecentExecutions($first: Int!, $agentId: String!) {
  executions(first: $first, orderBy: startedAt, orderDirection: desc, where: { result_not: PENDING, agent: $agentId }) {%s  }
}
""" % _EXECUTION_FIELDS

AGENT_DETAILS_QUERY = """
query GetAgentDetails($agentId: ID!) {
  agent(id: $agentId) {
    id
    walletAddress
    ownerAddress
    name
    strategyType
    riskLevel
    registeredAt
    isActive
    metadataUri
    totalExecutions
    successfulExecutions
    failedExecutions
    totalVolumeIn
    totalVolumeOut
    totalProfitLoss
    winRate
    reputationScore
    lastExecutionAt
  }
}
"""

AGENT_PERFORMANCE_QUERY = """
query GetAgentPerformance($agentId: ID!) {
  agent(id: $agentId) {
    totalExecutions
    successfulExecutions
    failedExecutions
    winRate
    totalProfitLoss
    reputationScore
    avgProfitPerTrade
  }
}
"""


# ============================================
# Record mapping
# ============================================

def _int(value: Any) -> int:
    """Indexer BigInts arrive as strings, sometimes in decimal notation"""
    if value is None:
        return 0
    return int(Decimal(str(value)))


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else _int(value)


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def parse_specialist(raw: Dict[str, Any]) -> SpecialistAgent:
    return SpecialistAgent(
        id=_int(raw["id"]),
        wallet_address=raw["walletAddress"],
        name=raw.get("name") or "",
        strategy_type=raw.get("strategyType") or "",
        reputation_score=_int(raw.get("reputationScore")),
        win_rate=float(raw.get("winRate") or 0),
        total_executions=_int(raw.get("totalExecutions")),
        total_profit_loss=_decimal(raw.get("totalProfitLoss")),
    )


def parse_permission(raw: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(raw["id"]),
        user_address=raw["user"]["id"],
        agent_id=_int(raw["agent"]["id"]),
        permission_type=raw.get("permissionType") or "",
        token_address=raw["tokenAddress"],
        token_symbol=raw.get("tokenSymbol"),
        amount_per_period=_int(raw.get("amountPerPeriod")),
        period_duration=_int(raw.get("periodDuration")),
        total_amount=_int(raw.get("totalAmount")),
        granted_at=_int(raw.get("grantedAt")),
        expires_at=_int(raw["expiresAt"]),
        revoked_at=_optional_int(raw.get("revokedAt")),
        is_active=bool(raw["isActive"]),
        amount_used=_int(raw.get("amountUsed")),
        amount_remaining=_int(raw["amountRemaining"]),
    )


def parse_execution(raw: Dict[str, Any]) -> IndexedExecution:
    return IndexedExecution(
        id=str(raw["id"]),
        agent_id=_int(raw["agent"]["id"]),
        agent_name=raw["agent"].get("name") or "",
        user_address=raw["user"]["id"],
        amount_in=_int(raw["amountIn"]),
        amount_out=_int(raw.get("amountOut")),
        token_in=raw["tokenIn"],
        token_out=raw["tokenOut"],
        profit_loss=_decimal(raw.get("profitLoss")),
        profit_loss_percent=float(raw.get("profitLossPercent") or 0),
        result=raw["result"],
        started_at=_int(raw["startedAt"]),
        completed_at=_optional_int(raw.get("completedAt")),
        start_tx_hash=raw.get("startTxHash"),
        complete_tx_hash=raw.get("completeTxHash"),
    )


def parse_agent(raw: Dict[str, Any]) -> IndexedAgent:
    return IndexedAgent(
        id=_int(raw["id"]),
        wallet_address=raw["walletAddress"],
        owner_address=raw.get("ownerAddress"),
        name=raw.get("name") or "",
        strategy_type=raw.get("strategyType") or "",
        risk_level=_int(raw.get("riskLevel")),
        registered_at=_int(raw.get("registeredAt")),
        is_active=bool(raw.get("isActive", True)),
        metadata_uri=raw.get("metadataUri"),
        total_executions=_int(raw.get("totalExecutions")),
        successful_executions=_int(raw.get("successfulExecutions")),
        failed_executions=_int(raw.get("failedExecutions")),
        total_volume_in=_int(raw.get("totalVolumeIn")),
        total_volume_out=_int(raw.get("totalVolumeOut")),
        total_profit_loss=_decimal(raw.get("totalProfitLoss")),
        win_rate=float(raw.get("winRate") or 0),
        reputation_score=_int(raw.get("reputationScore")),
        last_execution_at=_optional_int(raw.get("lastExecutionAt")),
    )


def parse_performance(raw: Dict[str, Any]) -> AgentPerformance:
    return AgentPerformance(
        total_executions=_int(raw.get("totalExecutions")),
        successful_executions=_int(raw.get("successfulExecutions")),
        failed_executions=_int(raw.get("failedExecutions")),
        win_rate=float(raw.get("winRate") or 0),
        total_profit_loss=_decimal(raw.get("totalProfitLoss")),
        reputation_score=_int(raw.get("reputationScore")),
        avg_profit_per_trade=_decimal(raw.get("avgProfitPerTrade")),
    )


def _map_records(records: Any, parser: Callable[[Dict[str, Any]], Any], what: str) -> List[Any]:
    if not isinstance(records, list):
        raise IndexerSchemaError(f"Expected a list of {what}, got {type(records).__name__}")
    try:
        return [parser(record) for record in records]
    except (KeyError, TypeError, ValueError, ArithmeticError, ValidationError) as e:
        raise IndexerSchemaError(f"Malformed {what} record: {e}") from e


def _map_record(record: Any, parser: Callable[[Dict[str, Any]], Any], what: str) -> Any:
    try:
        return parser(record)
    except (KeyError, TypeError, ValueError, ArithmeticError, ValidationError) as e:
        raise IndexerSchemaError(f"Malformed {what} record: {e}") from e


# ============================================
# Client
# ============================================

class IndexerClient:
    """
    GraphQL client for the agent indexer

    Network failures and non-2xx answers raise IndexerUnavailableError and are
    retried with exponential backoff. Malformed payloads raise
    IndexerSchemaError and are not retried.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self.session is None or self.session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"

            self.session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self):
        """Close the session"""
        if self.session and not self.session.closed:
            await self.session.close()

    async def _post_query(self, query: str, variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(self.url, json={"query": query, "variables": variables or {}}) as response:
                if not 200 <= response.status < 300:
                    raise IndexerUnavailableError(
                        f"GraphQL request failed: {response.status} {response.reason}"
                    )
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise IndexerSchemaError(f"Indexer returned invalid JSON: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise IndexerUnavailableError(f"Indexer unreachable: {type(e).__name__} {e}") from e

        if not isinstance(payload, dict):
            raise IndexerSchemaError(f"Expected a JSON object, got {type(payload).__name__}")

        errors = payload.get("errors")
        if errors:
            messages = ", ".join(
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in errors
            )
            raise IndexerSchemaError(f"GraphQL errors: {messages}")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise IndexerSchemaError("GraphQL response has no data object")
        return data

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute a GraphQL query and return its data object"""
        return await execute_with_retry(
            self._post_query,
            query,
            variables,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(IndexerUnavailableError,),
        )

    async def get_agent_by_id(self, agent_id: int) -> Optional[IndexedAgent]:
        data = await self.query(AGENT_DETAILS_QUERY, {"agentId": str(agent_id)})
        agent = data.get("agent")
        if agent is None:
            return None
        return _map_record(agent, parse_agent, "agent")

    async def get_recent_executions(self, agent_id: Optional[int] = None, limit: int = 100) -> List[IndexedExecution]:
        """
        Most recent completed executions, newest first

        Args:
            agent_id: Restrict to one agent; None for all agents
            limit: Window size
        """
        if agent_id is None:
            data = await self.query(RECENT_EXECUTIONS_QUERY, {"first": limit})
        else:
            data = await self.query(AGENT_RECENT_EXECUTIONS_QUERY, {"first": limit, "agentId": str(agent_id)})
        if "executions" not in data:
            raise IndexerSchemaError("GraphQL response has no executions field")
        return _map_records(data["executions"], parse_execution, "execution")

    async def get_active_permissions(self, agent_id: int) -> List[Permission]:
        data = await self.query(AGENT_PERMISSIONS_QUERY, {"agentId": str(agent_id)})
        agent = data.get("agent")
        if agent is None:
            return []
        if not isinstance(agent, dict):
            raise IndexerSchemaError("agent field is not an object")
        return _map_records(agent.get("permissionsReceived") or [], parse_permission, "permission")

    async def get_leaderboard(self, limit: int = 10) -> List[SpecialistAgent]:
        data = await self.query(LEADERBOARD_QUERY, {"first": limit})
        if "agents" not in data:
            raise IndexerSchemaError("GraphQL response has no agents field")
        return _map_records(data["agents"], parse_specialist, "agent")

    async def get_agent_performance(self, agent_id: int) -> Optional[AgentPerformance]:
        data = await self.query(AGENT_PERFORMANCE_QUERY, {"agentId": str(agent_id)})
        agent = data.get("agent")
        if agent is None:
            return None
        return _map_record(agent, parse_performance, "performance")
