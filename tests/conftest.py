"""
Shared pytest fixtures for arbitrage agent tests.
"""
import pytest
import numpy as np
from datetime import datetime, timedelta
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from apscheduler.jobstores.base import JobLookupError

from src.agents.exceptions import ExternalServiceError
from src.agents.llm_client import CompletionResult
from src.agents.models import (
    ArbitrageOpportunity,
    OpportunityType,
    PreferenceSchema,
    RiskLevel,
    SchemaConstraints,
    TimeHorizon,
    UserPreferences,
)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLLMClient:
    """
    In-memory stand-in for LLMClient.

    Every helper fails by default; set ``responses[method]`` to a string to
    make that helper succeed with that text.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def _result(self, method, *args):
        self.calls.append((method, args))
        text = self.responses.get(method)
        if text is None:
            return CompletionResult(error=ExternalServiceError("service unavailable", status_code=503))
        return CompletionResult(text=text)

    def generate_schema(self, user_input):
        return self._result("generate_schema", user_input)

    def find_arbitrage_opportunities(self, market_summary):
        return self._result("find_arbitrage_opportunities", market_summary)

    def match_opportunities(self, preferences, opportunities):
        return self._result("match_opportunities", preferences, opportunities)

    def generate_agent_message(self, agent_type, context, message_type):
        return self._result("generate_agent_message", agent_type, context, message_type)

    def called(self, method):
        return [args for name, args in self.calls if name == method]


class FakeScheduler:
    """Records jobs instead of running them on a background thread."""

    def __init__(self):
        self.jobs = {}
        self.running = False
        self.shutdown_called = False

    def add_job(self, func, trigger=None, id=None, **kwargs):
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False
        self.shutdown_called = True

    def run_job(self, job_id):
        return self.jobs[job_id]["func"]()


@pytest.fixture
def clock():
    """Clock fixed at a known instant."""
    return FixedClock(datetime(2024, 6, 1, 12, 0, 0))


@pytest.fixture
def rng():
    """Deterministic random source."""
    return np.random.default_rng(42)


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def make_preferences():
    """Factory for UserPreferences with sensible defaults."""
    def _make(**overrides):
        fields = {
            "risk_tolerance": RiskLevel.MEDIUM,
            "max_investment": 10_000.0,
            "preferred_assets": ("eth", "usdc"),
            "time_horizon": TimeHorizon.MEDIUM,
            "min_return_rate": 1.0,
            "excluded_protocols": (),
        }
        fields.update(overrides)
        return UserPreferences(**fields)

    return _make


@pytest.fixture
def make_schema(make_preferences, clock):
    """Factory for PreferenceSchema wrapping UserPreferences overrides."""
    def _make(user_id="user-1", **overrides):
        preferences = make_preferences(**overrides)
        return PreferenceSchema(
            id=f"pref-test-{user_id}",
            user_id=user_id,
            preferences=preferences,
            generated_at=clock(),
            constraints=SchemaConstraints(
                max_slippage=5.0,
                min_liquidity=preferences.max_investment * 2,
                gas_limit=200_000,
            ),
        )

    return _make


@pytest.fixture
def make_opportunity(clock):
    """Factory for ArbitrageOpportunity detected at the fixture clock's time."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        now = clock()
        fields = {
            "id": f"arb-test-{counter['n']}",
            "type": OpportunityType.DEX_ARBITRAGE,
            "asset_pair": "ETH/USDC",
            "protocol_a": "Uniswap V3",
            "protocol_b": "SushiSwap",
            "price_a": 3000.0,
            "price_b": 3045.0,
            "expected_return": 1.5,
            "required_capital": 5_000.0,
            "gas_estimate": 150_000.0,
            "risk": RiskLevel.MEDIUM,
            "liquidity": 2_000_000.0,
            "time_decay": 10.0,
            "detected_at": now,
            "expires_at": now + timedelta(minutes=15),
        }
        fields.update(overrides)
        return ArbitrageOpportunity(**fields)

    return _make
