"""
Token and cost budget for AI-powered healing.

Reservations are taken before each completion call so that concurrent healings
can never jointly overshoot the ceilings. A reservation is either committed
with the actual usage or released.
"""

import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.logging_config import get_healing_logger


@dataclass(frozen=True)
class BudgetReservation:
    id: str
    tokens: int
    cost: float


class Budget:
    """Thread-safe token and cost ceilings for one healing run."""

    def __init__(self, max_tokens: int, max_cost: float):
        self.max_tokens = max_tokens
        self.max_cost = max_cost
        self.used_tokens = 0
        self.used_cost = 0.0
        self.reserved_tokens = 0
        self.reserved_cost = 0.0

        self._lock = threading.Lock()
        self._open: Dict[str, BudgetReservation] = {}
        self.logger = get_healing_logger("budget")

    def reserve(self, tokens: int, cost: float) -> Optional[BudgetReservation]:
        """Atomically check the ceilings and hold the estimate. None when it does not fit."""
        with self._lock:
            if (self.used_tokens + self.reserved_tokens + tokens > self.max_tokens
                    or self.used_cost + self.reserved_cost + cost > self.max_cost + 1e-9):
                self.logger.info(
                    f"💰 Budget reservation refused: {tokens} tokens / ${cost:.4f} "
                    f"(remaining {self._remaining_tokens()} tokens / ${self._remaining_cost():.4f})")
                return None

            reservation = BudgetReservation(id=str(uuid.uuid4()), tokens=tokens, cost=cost)
            self._open[reservation.id] = reservation
            self.reserved_tokens += tokens
            self.reserved_cost += cost
            return reservation

    def commit(self, reservation: BudgetReservation, tokens: int, cost: float) -> None:
        """Replace the held estimate with the actual usage."""
        with self._lock:
            if self._open.pop(reservation.id, None) is None:
                return
            self.reserved_tokens -= reservation.tokens
            self.reserved_cost -= reservation.cost
            self.used_tokens += tokens
            self.used_cost += cost

    def set_limits(self, max_tokens: int, max_cost: float) -> None:
        """Change the ceilings. Usage and open reservations carry over."""
        with self._lock:
            self.max_tokens = max_tokens
            self.max_cost = max_cost
        self.logger.info(f"💰 Budget ceilings set to {max_tokens} tokens / ${max_cost:.2f}")

    def release(self, reservation: BudgetReservation) -> None:
        """Return a held estimate unused. Releasing twice is a no-op."""
        with self._lock:
            if self._open.pop(reservation.id, None) is None:
                return
            self.reserved_tokens -= reservation.tokens
            self.reserved_cost -= reservation.cost

    @property
    def is_exhausted(self) -> bool:
        with self._lock:
            return self._remaining_tokens() <= 0 or self._remaining_cost() <= 0

    @property
    def remaining_tokens(self) -> int:
        with self._lock:
            return self._remaining_tokens()

    @property
    def remaining_cost(self) -> float:
        with self._lock:
            return self._remaining_cost()

    @property
    def open_reservations(self) -> int:
        with self._lock:
            return len(self._open)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "max_tokens": self.max_tokens,
                "max_cost": self.max_cost,
                "used_tokens": self.used_tokens,
                "used_cost": round(self.used_cost, 6),
                "reserved_tokens": self.reserved_tokens,
                "reserved_cost": round(self.reserved_cost, 6),
                "remaining_tokens": self._remaining_tokens(),
                "remaining_cost": round(self._remaining_cost(), 6),
            }

    def _remaining_tokens(self) -> int:
        return self.max_tokens - self.used_tokens - self.reserved_tokens

    def _remaining_cost(self) -> float:
        return self.max_cost - self.used_cost - self.reserved_cost
