"""
Tests for the MatchingAgent.

Tests cover:
- Risk compatibility and opportunity filtering
- Scoring, allocation sizing, confidence and reasoning text
- Greedy allocation bounds
- analyze_opportunities() events, replacement semantics and error handling
"""

from datetime import timedelta
from unittest.mock import patch

import numpy as np
import pytest

from src.agents.base_agent import AgentMessage, AgentStatus, AgentType, MessageType
from src.agents.matching_agent import (
    MatchingAgent,
    allocate,
    allocation_percentage,
    build_reasoning,
    calculate_confidence,
    filter_opportunities,
    is_risk_compatible,
    score_opportunity,
)
from src.agents.models import OpportunityStatus, RiskLevel


class TestRiskCompatibility:

    @pytest.mark.parametrize("tolerance", list(RiskLevel))
    def test_low_risk_always_compatible(self, tolerance):
        assert is_risk_compatible(RiskLevel.LOW, tolerance)

    @pytest.mark.parametrize("tolerance,expected", [
        (RiskLevel.LOW, False),
        (RiskLevel.MEDIUM, False),
        (RiskLevel.HIGH, True),
    ])
    def test_high_risk_only_for_high_tolerance(self, tolerance, expected):
        assert is_risk_compatible(RiskLevel.HIGH, tolerance) is expected


class TestFilterOpportunities:
    """filter_opportunities()"""

    def test_accepts_matching_opportunity(self, make_schema, make_opportunity):
        opp = make_opportunity()

        assert filter_opportunities([opp], make_schema()) == [opp]

    def test_asset_match_is_substring(self, make_schema, make_opportunity):
        opp = make_opportunity(asset_pair="WBTC/ETH")

        assert filter_opportunities([opp], make_schema(preferred_assets=("btc",))) == [opp]
        assert filter_opportunities([opp], make_schema(preferred_assets=("arb",))) == []

    def test_rejects_riskier_than_tolerance(self, make_schema, make_opportunity):
        opp = make_opportunity(risk=RiskLevel.HIGH)

        assert filter_opportunities([opp], make_schema(risk_tolerance=RiskLevel.MEDIUM)) == []
        assert filter_opportunities([opp], make_schema(risk_tolerance=RiskLevel.HIGH)) == [opp]

    def test_rejects_capital_above_budget(self, make_schema, make_opportunity):
        opp = make_opportunity(required_capital=20_000)

        assert filter_opportunities([opp], make_schema(max_investment=10_000)) == []

    def test_rejects_low_return(self, make_schema, make_opportunity):
        opp = make_opportunity(expected_return=1.5)

        assert filter_opportunities([opp], make_schema(min_return_rate=2.0)) == []
        assert filter_opportunities([opp], make_schema(min_return_rate=1.5)) == [opp]

    def test_rejects_excluded_protocol(self, make_schema, make_opportunity):
        opp = make_opportunity(protocol_a="Curve", protocol_b="Balancer")

        assert filter_opportunities([opp], make_schema(excluded_protocols=("curve",))) == []
        assert filter_opportunities([opp], make_schema(excluded_protocols=("Uniswap",))) == [opp]

    def test_rejects_inactive(self, make_schema, make_opportunity):
        opp = make_opportunity(status=OpportunityStatus.EXECUTING)

        assert filter_opportunities([opp], make_schema()) == []


class TestScoringAndSizing:

    def test_score(self, make_schema, make_opportunity, clock):
        opp = make_opportunity(expected_return=1.5, liquidity=2_000_000)

        # 6 (return) + 30 (risk fit) + 20 (liquidity) + 5 (15 of 30 minutes left)
        assert score_opportunity(opp, make_schema(), clock()) == pytest.approx(61.0)

    def test_score_without_risk_fit(self, make_schema, make_opportunity, clock):
        opp = make_opportunity(expected_return=3.0, risk=RiskLevel.HIGH, liquidity=500_000,
                               expires_at=clock() + timedelta(minutes=45))

        score = score_opportunity(opp, make_schema(risk_tolerance=RiskLevel.LOW), clock())

        assert score == pytest.approx(12.0 + 0 + 10.0 + 10.0)

    def test_allocation_percentage_uses_lower_risk(self, make_schema, make_opportunity):
        opp = make_opportunity(risk=RiskLevel.LOW, expected_return=1.0)

        pct = allocation_percentage(opp, make_schema(risk_tolerance=RiskLevel.HIGH))

        assert pct == pytest.approx(0.2 + 0.05)

    def test_allocation_percentage_capped(self, make_schema, make_opportunity):
        opp = make_opportunity(risk=RiskLevel.HIGH, expected_return=10.0)

        assert allocation_percentage(opp, make_schema(risk_tolerance=RiskLevel.HIGH)) == 0.8

    @pytest.mark.parametrize("overrides,expected", [
        ({"expected_return": 1.5, "liquidity": 2_000_000}, 0.85),
        ({"expected_return": 3.0, "liquidity": 2_000_000}, 1.0),
        ({"expected_return": 3.0, "liquidity": 500_000}, 0.85),
        ({"expected_return": 3.0, "liquidity": 500_000, "risk": RiskLevel.HIGH}, 0.65),
    ])
    def test_confidence(self, make_schema, make_opportunity, overrides, expected):
        opp = make_opportunity(**overrides)

        assert calculate_confidence(opp, make_schema()) == pytest.approx(expected)

    def test_reasoning_text(self, make_schema, make_opportunity):
        opp = make_opportunity()

        text = build_reasoning(opp, make_schema(), 4750)

        assert text == (
            "Allocating 47.5% ($4,750) of max investment to ETH/USDC arbitrage between "
            "Uniswap V3 and SushiSwap. Expected return: 1.50%, risk level: medium, "
            "aligns with user's medium risk tolerance."
        )


class TestAllocate:
    """allocate()"""

    def test_single_allocation(self, make_schema, make_opportunity, clock):
        opp = make_opportunity()

        recs = allocate(make_schema(), [opp], clock())

        assert len(recs) == 1
        assert recs[0].opportunity_id == opp.id
        assert recs[0].user_id == "user-1"
        assert recs[0].allocated_amount == pytest.approx(4750)
        assert recs[0].confidence == pytest.approx(0.85)
        assert recs[0].created_at == clock()

    def test_capped_by_required_capital(self, make_schema, make_opportunity, clock):
        opp = make_opportunity(required_capital=1_000)

        recs = allocate(make_schema(), [opp], clock())

        assert recs[0].allocated_amount == 1_000

    def test_skips_allocations_below_minimum(self, make_schema, make_opportunity, clock):
        opp = make_opportunity(risk=RiskLevel.LOW, expected_return=0.6, required_capital=250)
        schema = make_schema(risk_tolerance=RiskLevel.LOW, max_investment=300)

        # 300 * (0.2 + 0.03) = 69
        assert allocate(schema, [opp], clock()) == []

    def test_top_three_by_score(self, make_schema, make_opportunity, clock):
        opps = [make_opportunity(expected_return=r, required_capital=500) for r in (1, 2, 3, 4, 5)]

        recs = allocate(make_schema(max_investment=100_000), opps, clock())

        assert [r.opportunity_id for r in recs] == [opps[4].id, opps[3].id, opps[2].id]

    def test_greedy_draws_down_remaining_capital(self, make_schema, make_opportunity, clock):
        opps = [make_opportunity(expected_return=2.0, required_capital=9_000) for _ in range(3)]

        recs = allocate(make_schema(max_investment=10_000), opps, clock())

        # 50% of what remains each time
        assert [r.allocated_amount for r in recs] == pytest.approx([5_000, 2_500, 1_250])

    def test_bounds_hold_for_random_inputs(self, make_schema, make_opportunity, clock):
        rng = np.random.default_rng(11)
        risks = list(RiskLevel)

        for _ in range(50):
            schema = make_schema(
                risk_tolerance=risks[int(rng.integers(3))],
                max_investment=float(rng.uniform(50, 60_000)),
                min_return_rate=0.0,
            )
            opps = [
                make_opportunity(
                    risk=risks[int(rng.integers(3))],
                    expected_return=float(rng.uniform(0.5, 3.5)),
                    required_capital=float(rng.uniform(1_000, 51_000)),
                    liquidity=float(rng.uniform(100_000, 5_100_000)),
                )
                for _ in range(int(rng.integers(1, 8)))
            ]
            by_id = {o.id: o for o in opps}

            recs = allocate(schema, filter_opportunities(opps, schema), clock())

            max_investment = schema.preferences.max_investment
            assert len(recs) <= 3
            assert sum(r.allocated_amount for r in recs) <= max_investment + 1e-9
            for rec in recs:
                opp = by_id[rec.opportunity_id]
                assert 100 <= rec.allocated_amount <= min(opp.required_capital, max_investment)
                assert is_risk_compatible(opp.risk, schema.preferences.risk_tolerance)


class TestMatchingAgent:
    """MatchingAgent state, events and messaging"""

    def test_add_user_preferences_upserts_and_emits(self, fake_llm, make_schema):
        agent = MatchingAgent(llm_client=fake_llm)
        updates = []
        agent.subscribe("preferencesUpdated", updates.append)

        first = make_schema(max_investment=1_000)
        second = make_schema(max_investment=2_000)
        agent.add_user_preferences(first)
        agent.add_user_preferences(second)

        assert agent.get_user_preferences("user-1") is second
        assert updates == [first, second]

    def test_analyze_produces_recommendations_per_user(self, fake_llm, make_schema, make_opportunity, clock):
        agent = MatchingAgent(llm_client=fake_llm, clock=clock)
        agent.add_user_preferences(make_schema("alice"))
        agent.add_user_preferences(make_schema("bob", preferred_assets=("op",)))

        produced = agent.analyze_opportunities([make_opportunity()])

        assert [r.user_id for r in produced] == ["alice"]
        assert len(agent.get_user_recommendations("alice")) == 1
        assert agent.get_user_recommendations("bob") == []
        assert agent.get_user_recommendations("nobody") == []
        assert agent.status is AgentStatus.IDLE

    def test_emits_info_message_and_event_per_recommendation(self, fake_llm, make_schema, make_opportunity, clock):
        agent = MatchingAgent(llm_client=fake_llm, clock=clock)
        agent.add_user_preferences(make_schema(max_investment=100_000))
        messages = []
        events = []
        agent.subscribe("message", messages.append)
        agent.subscribe("recommendation", events.append)

        produced = agent.analyze_opportunities(
            [make_opportunity(expected_return=r, required_capital=2_000) for r in (1.0, 2.0)]
        )

        assert events == produced
        assert len(messages) == 2
        for message, rec in zip(messages, produced):
            assert message.message_type is MessageType.INFO
            assert message.agent_type is AgentType.MATCHING
            assert message.data is rec
            assert rec.reasoning in message.content

    def test_analysis_replaces_previous_recommendations(self, fake_llm, make_schema, make_opportunity):
        agent = MatchingAgent(llm_client=fake_llm)
        agent.add_user_preferences(make_schema())

        agent.analyze_opportunities([make_opportunity()])
        assert len(agent.get_user_recommendations("user-1")) == 1

        agent.analyze_opportunities([])
        assert agent.get_user_recommendations("user-1") == []

    def test_requests_commentary_for_candidates(self, fake_llm, make_schema, make_opportunity):
        fake_llm.responses["match_opportunities"] = "Put half into the ETH/USDC spread."
        agent = MatchingAgent(llm_client=fake_llm)
        agent.add_user_preferences(make_schema())
        opp = make_opportunity()

        agent.analyze_opportunities([opp])

        calls = fake_llm.called("match_opportunities")
        assert len(calls) == 1
        preferences, candidates = calls[0]
        assert preferences["risk_tolerance"] == "medium"
        assert [c["id"] for c in candidates] == [opp.id]

    def test_no_commentary_without_candidates(self, fake_llm, make_schema, make_opportunity):
        agent = MatchingAgent(llm_client=fake_llm)
        agent.add_user_preferences(make_schema(preferred_assets=("op",)))

        agent.analyze_opportunities([make_opportunity()])

        assert fake_llm.called("match_opportunities") == []

    def test_failure_returns_empty(self, fake_llm, make_schema, make_opportunity):
        agent = MatchingAgent(llm_client=fake_llm)
        agent.add_user_preferences(make_schema())

        with patch("src.agents.matching_agent.allocate", side_effect=RuntimeError("boom")):
            assert agent.analyze_opportunities([make_opportunity()]) == []

        assert agent.status is AgentStatus.IDLE

    def test_limits_from_config(self, fake_llm, make_schema, make_opportunity):
        agent = MatchingAgent(
            config={"matching": {"max_recommendations": 1, "min_allocation": 5_000}},
            llm_client=fake_llm,
        )
        agent.add_user_preferences(make_schema(max_investment=100_000))

        produced = agent.analyze_opportunities([
            make_opportunity(expected_return=3.0, required_capital=50_000),
            make_opportunity(expected_return=2.0, required_capital=50_000),
        ])

        assert len(produced) == 1
        assert produced[0].allocated_amount >= 5_000

    def test_responds_to_any_message(self, fake_llm):
        agent = MatchingAgent(llm_client=fake_llm)
        sent = []
        agent.subscribe("message", sent.append)

        agent.respond_to_message(AgentMessage(
            agent_id="arb-agent-001",
            agent_type=AgentType.ARBITRAGE,
            content="Found some spreads",
            message_type=MessageType.INFO,
            recipient_id=agent.id,
        ))

        assert len(sent) == 1
        assert sent[0].message_type is MessageType.RESPONSE
        assert sent[0].recipient_id == "arb-agent-001"
        assert sent[0].content.startswith("Matching Agent:")
