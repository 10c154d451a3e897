"""
Strategy capability shared by every agent variant
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Protocol

from ..models import Decision


@dataclass(frozen=True)
class StrategyContext:
    """Per-cycle inputs a strategy may not read from the indexer"""
    agent_id: int
    agent_wallet: str
    now: int
    pending_keys: FrozenSet[str] = field(default_factory=frozenset)


class Strategy(Protocol):
    name: str

    async def evaluate(self, context: StrategyContext) -> Optional[Decision]:
        """Return a decision for this cycle, or None for no action"""
        ...
