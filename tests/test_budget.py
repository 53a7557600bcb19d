"""Tests for BudgetEnforcer and cost estimation."""

import pytest

from vaultagent.engine.budget import BudgetEnforcer, estimate_cost
from vaultagent.engine.errors import BudgetExceeded, TurnLimitExceeded
from vaultagent.engine.models import (
    BudgetStatus,
    ModelTier,
    SessionAccounting,
    SessionPolicy,
    Usage,
)


@pytest.fixture
def enforcer():
    return BudgetEnforcer()


class TestEstimateCost:
    def test_sonnet_pricing(self):
        usage = Usage(input_tokens=1_000_000, output_tokens=1_000_000)
        assert estimate_cost(usage, ModelTier.SONNET) == pytest.approx(18.0)

    def test_cache_tokens(self):
        usage = Usage(cache_creation_input_tokens=1_000_000, cache_read_input_tokens=1_000_000)
        assert estimate_cost(usage, ModelTier.HAIKU) == pytest.approx(1.25 + 0.1)

    def test_model_id_string_resolves_tier(self):
        usage = Usage(output_tokens=1_000_000)
        assert estimate_cost(usage, "claude-opus-4-6") == pytest.approx(25.0)

    def test_unknown_model_priced_as_sonnet(self):
        usage = Usage(input_tokens=1_000_000)
        assert estimate_cost(usage, "mystery-model") == pytest.approx(3.0)


class TestChecks:
    def test_ok_at_exact_ceiling(self, enforcer):
        accounting = SessionAccounting(total_cost_usd=1.0, turns=5)
        policy = SessionPolicy(max_budget_per_session=1.0, max_turns=5)
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.OK

    def test_budget_exceeded(self, enforcer):
        accounting = SessionAccounting(total_cost_usd=1.01)
        policy = SessionPolicy(max_budget_per_session=1.0)
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.BUDGET_EXCEEDED

    def test_turn_limit_exceeded(self, enforcer):
        accounting = SessionAccounting(turns=4)
        policy = SessionPolicy(max_turns=3)
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.TURN_LIMIT_EXCEEDED

    def test_acknowledged_budget_allows_more_spending(self, enforcer):
        accounting = SessionAccounting(total_cost_usd=5.0)
        policy = SessionPolicy(max_budget_per_session=1.0)
        enforcer.grant_continuation(accounting, policy, BudgetStatus.BUDGET_EXCEEDED)
        assert accounting.budget_acknowledged
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.OK

    def test_turn_continuation_adds_another_allotment(self, enforcer):
        accounting = SessionAccounting(turns=4)
        policy = SessionPolicy(max_turns=3)
        enforcer.grant_continuation(accounting, policy, BudgetStatus.TURN_LIMIT_EXCEEDED)
        assert accounting.extra_turns == 3
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.OK
        accounting.turns = 7
        assert enforcer.check_before_step(accounting, policy) == BudgetStatus.TURN_LIMIT_EXCEEDED

    def test_to_error(self, enforcer):
        policy = SessionPolicy(max_budget_per_session=1.0, max_turns=2)
        accounting = SessionAccounting(total_cost_usd=1.5, turns=3)
        budget_error = enforcer.to_error(BudgetStatus.BUDGET_EXCEEDED, accounting, policy)
        assert isinstance(budget_error, BudgetExceeded)
        assert "$1.5000" in str(budget_error)
        turn_error = enforcer.to_error(BudgetStatus.TURN_LIMIT_EXCEEDED, accounting, policy)
        assert isinstance(turn_error, TurnLimitExceeded)
        assert turn_error.max_turns == 2
        assert enforcer.to_error(BudgetStatus.OK, accounting, policy) is None


class TestRecording:
    def test_reported_cost_preferred(self, enforcer):
        accounting = SessionAccounting()
        cost = enforcer.record_response(
            accounting, Usage(input_tokens=1_000_000), ModelTier.SONNET, reported_cost=0.25,
        )
        assert cost == 0.25
        assert accounting.total_cost_usd == pytest.approx(0.25)
        assert accounting.turns == 1

    def test_estimated_when_not_reported(self, enforcer):
        accounting = SessionAccounting()
        enforcer.record_response(accounting, Usage(output_tokens=100_000), ModelTier.SONNET)
        assert accounting.total_cost_usd == pytest.approx(1.5)

    def test_add_cost_does_not_count_a_turn(self, enforcer):
        accounting = SessionAccounting(turns=2)
        enforcer.add_cost(accounting, 0.3)
        assert accounting.total_cost_usd == pytest.approx(0.3)
        assert accounting.turns == 2

    def test_remaining_never_negative(self, enforcer):
        accounting = SessionAccounting(total_cost_usd=3.0, turns=60)
        allowance = enforcer.remaining(accounting, SessionPolicy(max_budget_per_session=2.0))
        assert allowance.budget == 0.0
        assert allowance.turns == 0

    def test_reset(self):
        accounting = SessionAccounting(
            total_cost_usd=1.0, turns=3, budget_acknowledged=True, extra_turns=50,
        )
        accounting.reset()
        assert accounting == SessionAccounting()
