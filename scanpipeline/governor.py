"""
Spend ceiling for paid inference calls.
"""

import logging
import threading
from dataclasses import dataclass

from .errors import BudgetExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Charge:
    """Answer to one charge request."""

    allowed: bool
    spent: float
    remaining: float


class CostGovernor:
    """Tracks cumulative spend against a fixed ceiling.

    Callers charge the estimated cost of a call immediately before making it
    and settle the real cost once the call returns. The first charge that
    would push spend over the ceiling is rejected, and every later charge is
    rejected too: once the limit is reached the caller must stop. Safe to
    share between threads.

    Usage:
        governor = CostGovernor(ceiling_usd=1.00)
        if not governor.charge(0.002).allowed:
            ...  # stop issuing calls
        result = client.ocr(...)
        governor.settle(0.002, result.cost_usd)
    """

    def __init__(self, ceiling_usd: float, spent_usd: float = 0.0) -> None:
        if ceiling_usd < 0:
            raise ValueError(f"ceiling_usd must be >= 0, got {ceiling_usd}")
        if spent_usd < 0:
            raise ValueError(f"spent_usd must be >= 0, got {spent_usd}")

        self.ceiling = ceiling_usd
        self._spent = spent_usd
        self._actual = 0.0
        self._exhausted = False
        self._lock = threading.Lock()

    @property
    def spent(self) -> float:
        with self._lock:
            return self._spent

    @property
    def remaining(self) -> float:
        with self._lock:
            return max(self.ceiling - self._spent, 0.0)

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._exhausted

    @property
    def actual_spent(self) -> float:
        """Sum of the costs reported after calls completed."""
        with self._lock:
            return self._actual

    def charge(self, amount: float) -> Charge:
        """Request permission to spend ``amount`` before a call.

        Args:
            amount: Estimated cost of the next call in USD

        Returns:
            Charge; when allowed, the amount has been added to spend
        """
        if amount < 0:
            raise ValueError(f"Charge amount must be >= 0, got {amount}")

        with self._lock:
            if self._exhausted or self._spent + amount > self.ceiling:
                if not self._exhausted:
                    logger.warning(
                        f"Spend limit reached: ${self._spent:.4f} of ${self.ceiling:.4f}"
                    )
                self._exhausted = True
                return Charge(False, self._spent, max(self.ceiling - self._spent, 0.0))

            self._spent += amount
            return Charge(True, self._spent, self.ceiling - self._spent)

    def require(self, amount: float) -> Charge:
        """Like charge(), but raise BudgetExceeded on rejection."""
        result = self.charge(amount)
        if not result.allowed:
            raise BudgetExceeded(result.spent, self.ceiling, amount)
        return result

    def settle(self, estimate: float, actual: float) -> None:
        """Replace a charged estimate with the real cost of the call.

        Spend moves by ``actual - estimate``, so later charges are checked
        against what was really spent. A call that failed settles with an
        actual cost of 0.
        """
        if actual < 0:
            raise ValueError(f"Actual cost must be >= 0, got {actual}")

        with self._lock:
            self._spent = max(self._spent + actual - estimate, 0.0)
            self._actual += actual
