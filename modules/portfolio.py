"""
portfolio.py
------------
Capacity arbitration for the paper book: when the position-count ceiling is
reached, pick the single worst open position as the eviction candidate and
decide whether it is losing enough to be replaced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from models.config import ReplaceBasis
from models.position import OpenPosition


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplacementDecision:
    candidate: Optional[OpenPosition]
    metric: float
    allowed: bool


class CapacityArbiter:
    """
    Ranks open positions by their latest return on the configured basis.

    A position that has never been marked counts as flat (0%).  Ties keep the
    order the positions were passed in.
    """

    def __init__(self, basis: ReplaceBasis, replace_threshold_pct: float) -> None:
        self.basis = basis
        self.replace_threshold_pct = replace_threshold_pct

    def metric(self, position: Optional[OpenPosition]) -> float:
        if position is None:
            return 0.0
        if self.basis == "levered":
            value = position.latest_leveraged_return_pct
        else:
            value = position.latest_unlevered_return_pct
        return value if value is not None else 0.0

    def select_candidate(self, positions: Sequence[OpenPosition]) -> Optional[OpenPosition]:
        if not positions:
            return None
        return sorted(positions, key=self.metric)[0]

    @property
    def eviction_line_pct(self) -> float:
        return -self.replace_threshold_pct * 100

    def allows_replacement(self, candidate: Optional[OpenPosition]) -> bool:
        if candidate is None:
            return False
        return self.metric(candidate) <= self.eviction_line_pct

    def decide(self, positions: List[OpenPosition]) -> ReplacementDecision:
        candidate = self.select_candidate(positions)
        metric = self.metric(candidate)
        allowed = self.allows_replacement(candidate)
        logger.debug(
            "[Portfolio] candidate=%s metric=%.4f line=%.4f allowed=%s",
            candidate.symbol if candidate else None,
            metric,
            self.eviction_line_pct,
            allowed,
        )
        return ReplacementDecision(candidate=candidate, metric=metric, allowed=allowed)
