"""Session budget and turn ceilings.

Cost accumulates after each completed model response, from the cost the
stream reports or, failing that, from token usage priced per model tier.
Ceilings use strict greater-than: a session exactly at its budget may
still take another step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import BudgetExceeded, TurnLimitExceeded
from .models import (
    BudgetStatus,
    ModelTier,
    SessionAccounting,
    SessionPolicy,
    Usage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pricing:
    """USD per million tokens."""
    input: float
    output: float

    @property
    def cache_write(self) -> float:
        return self.input * 1.25

    @property
    def cache_read(self) -> float:
        return self.input * 0.1


PRICING: dict[ModelTier, Pricing] = {
    ModelTier.HAIKU: Pricing(input=1.0, output=5.0),
    ModelTier.SONNET: Pricing(input=3.0, output=15.0),
    ModelTier.OPUS: Pricing(input=5.0, output=25.0),
}


def _tier_for(model: ModelTier | str) -> ModelTier:
    if isinstance(model, ModelTier):
        return model
    lowered = model.lower()
    for tier in ModelTier:
        if tier.value in lowered:
            return tier
    logger.debug("Unknown model %s, pricing as sonnet", model)
    return ModelTier.SONNET


def estimate_cost(usage: Usage, model: ModelTier | str) -> float:
    price = PRICING[_tier_for(model)]
    return (
        usage.input_tokens * price.input
        + usage.output_tokens * price.output
        + usage.cache_creation_input_tokens * price.cache_write
        + usage.cache_read_input_tokens * price.cache_read
    ) / 1_000_000


@dataclass
class Allowance:
    """What is left of a session's ceilings, used to scope subagents."""
    budget: float
    turns: int


class BudgetEnforcer:
    """Stateless checks over a ``SessionAccounting``."""

    @staticmethod
    def turn_ceiling(accounting: SessionAccounting, policy: SessionPolicy) -> int:
        return policy.max_turns + accounting.extra_turns

    def check_before_step(
        self, accounting: SessionAccounting, policy: SessionPolicy,
    ) -> BudgetStatus:
        if (
            not accounting.budget_acknowledged
            and accounting.total_cost_usd > policy.max_budget_per_session
        ):
            return BudgetStatus.BUDGET_EXCEEDED
        if accounting.turns > self.turn_ceiling(accounting, policy):
            return BudgetStatus.TURN_LIMIT_EXCEEDED
        return BudgetStatus.OK

    def to_error(
        self,
        status: BudgetStatus,
        accounting: SessionAccounting,
        policy: SessionPolicy,
    ) -> BudgetExceeded | TurnLimitExceeded | None:
        if status == BudgetStatus.BUDGET_EXCEEDED:
            return BudgetExceeded(
                accounting.total_cost_usd, policy.max_budget_per_session,
            )
        if status == BudgetStatus.TURN_LIMIT_EXCEEDED:
            return TurnLimitExceeded(
                accounting.turns, self.turn_ceiling(accounting, policy),
            )
        return None

    def record_response(
        self,
        accounting: SessionAccounting,
        usage: Usage,
        model: ModelTier | str,
        reported_cost: float | None = None,
    ) -> float:
        """Add one response's cost and count it as a turn. Returns the cost."""
        cost = reported_cost if reported_cost is not None else estimate_cost(usage, model)
        accounting.total_cost_usd += cost
        accounting.turns += 1
        logger.debug(
            "Response recorded: cost=$%.4f total=$%.4f turns=%d",
            cost, accounting.total_cost_usd, accounting.turns,
        )
        return cost

    def add_cost(self, accounting: SessionAccounting, cost: float) -> None:
        """Roll a nested conversation's cost into this accounting."""
        accounting.total_cost_usd += cost

    def grant_continuation(
        self,
        accounting: SessionAccounting,
        policy: SessionPolicy,
        status: BudgetStatus,
    ) -> None:
        """Apply an explicit "continue anyway" for the current query."""
        if status == BudgetStatus.BUDGET_EXCEEDED:
            accounting.budget_acknowledged = True
        elif status == BudgetStatus.TURN_LIMIT_EXCEEDED:
            accounting.extra_turns += policy.max_turns
        logger.info(
            "Continuation granted after %s (cost=$%.4f turns=%d)",
            status.value, accounting.total_cost_usd, accounting.turns,
        )

    def remaining(
        self, accounting: SessionAccounting, policy: SessionPolicy,
    ) -> Allowance:
        return Allowance(
            budget=max(0.0, policy.max_budget_per_session - accounting.total_cost_usd),
            turns=max(0, self.turn_ceiling(accounting, policy) - accounting.turns),
        )
