"""
strategy/base.py
----------------
Common interface for all entry detectors.

A detector looks at one symbol's recent market data and decides whether the
just-closed hour confirms an entry at the next open.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional

from models.signal import SignalDecision


class BaseDetector(ABC):
    """Abstract detector with a single async entry point."""

    @abstractmethod
    async def detect(self, symbol: str) -> Optional[SignalDecision]:
        """
        Return a ``SignalDecision`` when the entry rule confirms, else None.

        "No signal" is a normal filter result, not an error; only transport
        failures from the market-data source propagate.
        """
        raise NotImplementedError
