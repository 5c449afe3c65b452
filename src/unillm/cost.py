"""Token pricing table and per provider/model cost tracking."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from unillm.exceptions import BudgetExceededError, UsageNotFoundError
from unillm.types import Usage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenRates:
    """USD per 1000 tokens."""

    prompt_rate: float
    completion_rate: float

    def cost(self, usage: Usage) -> float:
        return (
            usage.prompt_tokens / 1000 * self.prompt_rate
            + usage.completion_tokens / 1000 * self.completion_rate
        )


# provider -> model -> rates
RateTable = dict[str, dict[str, TokenRates]]

# ── Pricing Registry (USD per 1K tokens) ───────────────────────
DEFAULT_RATES: RateTable = {
    "openai": {
        "gpt-4": TokenRates(prompt_rate=0.03, completion_rate=0.06),
        "gpt-3.5-turbo": TokenRates(prompt_rate=0.002, completion_rate=0.002),
    },
    "anthropic": {
        "claude-2.1": TokenRates(prompt_rate=0.008, completion_rate=0.024),
        "claude-2": TokenRates(prompt_rate=0.008, completion_rate=0.024),
        "claude-instant": TokenRates(prompt_rate=0.0008, completion_rate=0.0024),
    },
}


@dataclass
class UsageStats:
    """Accumulated usage for one provider/model pair."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    request_count: int = 0
    last_request_time: datetime | None = None


class _RWLock:
    """Readers share the lock; a writer holds it alone."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class CostTracker:
    """Accumulates token usage and cost per provider/model.

    Budgets are per provider/model: a call whose cost would push the
    accumulated total past the budget is rejected with
    ``BudgetExceededError`` and leaves the tracked state untouched.

    Safe to share between threads.
    """

    def __init__(self, rates: RateTable | None = None) -> None:
        source = rates if rates is not None else DEFAULT_RATES
        self._rates: RateTable = {provider: dict(models) for provider, models in source.items()}
        self._usage: dict[tuple[str, str], UsageStats] = {}
        self._budgets: dict[tuple[str, str], float] = {}
        self._lock = _RWLock()

    def track_usage(self, provider: str, model: str, usage: Usage) -> float:
        """Record one call's usage and return its cost in USD.

        Raises:
            BudgetExceededError: If the call would exceed the pair's budget.
        """
        key = (provider, model)
        with self._lock.write():
            rates = self._rates.get(provider, {}).get(model)
            cost = rates.cost(usage) if rates is not None else 0.0

            stats = self._usage.get(key)
            current = stats.total_cost if stats is not None else 0.0
            budget = self._budgets.get(key)
            if budget is not None and current + cost > budget:
                raise BudgetExceededError(provider, model, current, cost, budget)

            if stats is None:
                stats = self._usage[key] = UsageStats()
            stats.prompt_tokens += usage.prompt_tokens
            stats.completion_tokens += usage.completion_tokens
            stats.total_tokens += usage.total_tokens
            stats.total_cost += cost
            stats.request_count += 1
            stats.last_request_time = datetime.now(UTC)

        if rates is None:
            logger.debug("no rates for %s/%s; usage tracked at zero cost", provider, model)
        return cost

    def get_cost(self, provider: str, model: str) -> float:
        """Total cost tracked for the pair.

        Raises:
            UsageNotFoundError: Nothing has been tracked for the pair.
        """
        with self._lock.read():
            stats = self._usage.get((provider, model))
            if stats is None:
                raise UsageNotFoundError(f"no usage data for {provider} {model}")
            return stats.total_cost

    def get_usage_stats(
        self,
        provider: str,
        model: str,
        start: datetime,
        end: datetime,
    ) -> UsageStats:
        """Return a copy of the pair's stats if its last request falls in [start, end].

        Raises:
            UsageNotFoundError: Nothing tracked, or the last request is outside the window.
        """
        with self._lock.read():
            stats = self._usage.get((provider, model))
            if stats is None:
                raise UsageNotFoundError(f"no usage data for {provider} {model}")
            last = stats.last_request_time
            if last is None or last < start or last > end:
                raise UsageNotFoundError(
                    f"no usage data for {provider} {model} in the requested time range"
                )
            return replace(stats)

    def set_budget(self, provider: str, model: str, budget: float) -> None:
        """Set the spending ceiling for a provider/model pair."""
        if budget < 0:
            msg = "budget cannot be negative"
            raise ValueError(msg)
        with self._lock.write():
            self._budgets[(provider, model)] = budget

    def set_rates(self, provider: str, model: str, rates: TokenRates) -> None:
        """Register or update the rates for a provider/model pair."""
        with self._lock.write():
            self._rates.setdefault(provider, {})[model] = rates

    @property
    def rates(self) -> RateTable:
        with self._lock.read():
            return copy.deepcopy(self._rates)

    @property
    def total_cost(self) -> float:
        """Cost across every tracked pair."""
        with self._lock.read():
            return sum(stats.total_cost for stats in self._usage.values())

    def summary(self) -> dict[str, Any]:
        """Return a summary dict suitable for logging or span attributes."""
        with self._lock.read():
            pairs = {
                f"{provider}/{model}": {
                    "prompt_tokens": stats.prompt_tokens,
                    "completion_tokens": stats.completion_tokens,
                    "total_tokens": stats.total_tokens,
                    "total_cost_usd": round(stats.total_cost, 6),
                    "request_count": stats.request_count,
                }
                for (provider, model), stats in self._usage.items()
            }
            return {
                "total_cost_usd": round(sum(s.total_cost for s in self._usage.values()), 6),
                "request_count": sum(s.request_count for s in self._usage.values()),
                "by_model": pairs,
            }
