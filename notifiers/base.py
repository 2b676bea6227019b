"""
notifiers/base.py
-----------------
The interface every notification sink implements.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class IncomingMessage:
    update_id: int
    chat_id: str
    text: str


class BaseNotifier(ABC):
    """Concrete sinks must implement send(); the rest default to no-ops."""

    enabled: bool = False

    @abstractmethod
    async def send(self, text: str, chat_id: Optional[str] = None) -> Optional[int]:
        """Deliver ``text``; return the sink's message id, or None on failure."""
        raise NotImplementedError

    async def get_updates(self, offset: int) -> List[IncomingMessage]:
        return []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None
