"""
Matching Agent

Maps user preference schemas onto live arbitrage opportunities and produces
ranked, capital-bounded allocation recommendations.

Per user: filter -> score -> take top N -> allocate greedily against the
user's remaining budget.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base_agent import AgentMessage, AgentStatus, AgentType, BaseAgent, Clock, MessageType
from .models import (
    AllocationRecommendation,
    ArbitrageOpportunity,
    OpportunityStatus,
    PreferenceSchema,
    RiskLevel,
)

logger = logging.getLogger(__name__)

ALLOCATION_RISK_MULTIPLIERS = {RiskLevel.LOW: 0.2, RiskLevel.MEDIUM: 0.4, RiskLevel.HIGH: 0.6}
MAX_RETURN_BONUS = 0.3
MAX_ALLOCATION_PCT = 0.8

DEFAULT_MAX_RECOMMENDATIONS = 3
DEFAULT_MIN_ALLOCATION = 100.0

# Score weights
RETURN_WEIGHT = 40
RISK_WEIGHT = 30
LIQUIDITY_WEIGHT = 20
TIME_WEIGHT = 10
LIQUIDITY_REFERENCE = 1_000_000
TIME_REFERENCE_MINUTES = 30


def is_risk_compatible(opportunity_risk: RiskLevel, user_tolerance: RiskLevel) -> bool:
    """An opportunity is compatible if it is no riskier than the user's tolerance."""
    return opportunity_risk.rank <= user_tolerance.rank


def filter_opportunities(
    opportunities: List[ArbitrageOpportunity],
    schema: PreferenceSchema,
) -> List[ArbitrageOpportunity]:
    """
    Keep only opportunities acceptable to the user.

    An opportunity passes when it is active, its pair mentions a preferred
    asset, its risk is within tolerance, its capital requirement fits the
    budget, its return meets the minimum, and neither protocol is excluded.
    """
    prefs = schema.preferences
    assets = [asset.lower() for asset in prefs.preferred_assets]
    excluded = [protocol.lower() for protocol in prefs.excluded_protocols]

    def accepts(opp: ArbitrageOpportunity) -> bool:
        pair = opp.asset_pair.lower()
        protocols = (opp.protocol_a.lower(), opp.protocol_b.lower())
        return (
            opp.status is OpportunityStatus.ACTIVE
            and any(asset in pair for asset in assets)
            and is_risk_compatible(opp.risk, prefs.risk_tolerance)
            and opp.required_capital <= prefs.max_investment
            and opp.expected_return >= prefs.min_return_rate
            and not any(ex in protocol for ex in excluded for protocol in protocols)
        )

    return [opp for opp in opportunities if accepts(opp)]


def score_opportunity(
    opportunity: ArbitrageOpportunity,
    schema: PreferenceSchema,
    now: datetime,
) -> float:
    """Weighted score of return, risk fit, liquidity and remaining lifetime."""
    score = (opportunity.expected_return / 10) * RETURN_WEIGHT
    if is_risk_compatible(opportunity.risk, schema.preferences.risk_tolerance):
        score += RISK_WEIGHT
    score += min(opportunity.liquidity / LIQUIDITY_REFERENCE, 1) * LIQUIDITY_WEIGHT
    score += min(opportunity.minutes_remaining(now) / TIME_REFERENCE_MINUTES, 1) * TIME_WEIGHT
    return score


def allocation_percentage(opportunity: ArbitrageOpportunity, schema: PreferenceSchema) -> float:
    """Fraction of remaining capital to commit, capped at 80%."""
    base = min(
        ALLOCATION_RISK_MULTIPLIERS[schema.preferences.risk_tolerance],
        ALLOCATION_RISK_MULTIPLIERS[opportunity.risk],
    )
    return_bonus = min(opportunity.expected_return / 20, MAX_RETURN_BONUS)
    return min(base + return_bonus, MAX_ALLOCATION_PCT)


def calculate_confidence(opportunity: ArbitrageOpportunity, schema: PreferenceSchema) -> float:
    confidence = 0.5
    if is_risk_compatible(opportunity.risk, schema.preferences.risk_tolerance):
        confidence += 0.2
    if opportunity.liquidity > LIQUIDITY_REFERENCE:
        confidence += 0.15
    if 2 <= opportunity.expected_return <= 15:
        confidence += 0.15
    return min(confidence, 1.0)


def build_reasoning(
    opportunity: ArbitrageOpportunity,
    schema: PreferenceSchema,
    amount: float,
) -> str:
    """Human-readable justification for an allocation."""
    prefs = schema.preferences
    percentage = amount / prefs.max_investment * 100
    return (
        f"Allocating {percentage:.1f}% (${amount:,.0f}) of max investment to "
        f"{opportunity.asset_pair} arbitrage between {opportunity.protocol_a} and "
        f"{opportunity.protocol_b}. Expected return: {opportunity.expected_return:.2f}%, "
        f"risk level: {opportunity.risk.value}, aligns with user's "
        f"{prefs.risk_tolerance.value} risk tolerance."
    )


def allocate(
    schema: PreferenceSchema,
    candidates: List[ArbitrageOpportunity],
    now: datetime,
    max_recommendations: int = DEFAULT_MAX_RECOMMENDATIONS,
    min_allocation: float = DEFAULT_MIN_ALLOCATION,
) -> List[AllocationRecommendation]:
    """
    Greedy allocation of a user's budget across the best-scoring candidates.

    Allocations below ``min_allocation`` are skipped without consuming
    capital. The total never exceeds the user's max investment.

    Args:
        schema: The user's preference schema
        candidates: Already-filtered opportunities
        now: Current time (for scoring and timestamps)
        max_recommendations: Number of top-scoring candidates considered
        min_allocation: Smallest allocation worth recommending

    Returns:
        Recommendations in score order
    """
    ranked = sorted(
        candidates,
        key=lambda opp: score_opportunity(opp, schema, now),
        reverse=True,
    )[:max_recommendations]

    remaining = schema.preferences.max_investment
    recommendations = []

    for opp in ranked:
        if remaining <= 0:
            break

        amount = min(remaining * allocation_percentage(opp, schema), opp.required_capital)
        if amount < min_allocation:
            continue

        recommendations.append(AllocationRecommendation(
            opportunity_id=opp.id,
            user_id=schema.user_id,
            allocated_amount=amount,
            confidence=calculate_confidence(opp, schema),
            reasoning=build_reasoning(opp, schema, amount),
            created_at=now,
        ))
        remaining -= amount

    return recommendations


class MatchingAgent(BaseAgent):
    """
    Matching Agent - produces allocation recommendations per user.

    Each analysis replaces the stored recommendation list for every known
    user.

    Events:
        message: Info message per recommendation, responses to any request
        preferencesUpdated: PreferenceSchema stored or replaced
        recommendation: AllocationRecommendation produced by an analysis
    """

    AGENT_ID = "matching-agent-001"
    AGENT_NAME = "Preference Matching Agent"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        llm_client=None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            agent_id=self.AGENT_ID,
            agent_type=AgentType.MATCHING,
            name=self.AGENT_NAME,
            config=config,
            llm_client=llm_client,
            clock=clock,
        )

        matching_config = self.config.get("matching", {})
        self.max_recommendations = matching_config.get(
            "max_recommendations", DEFAULT_MAX_RECOMMENDATIONS
        )
        self.min_allocation = matching_config.get("min_allocation", DEFAULT_MIN_ALLOCATION)

        self._preferences: Dict[str, PreferenceSchema] = {}
        self._recommendations: Dict[str, List[AllocationRecommendation]] = {}
        self._lock = threading.Lock()

    def add_user_preferences(self, schema: PreferenceSchema) -> None:
        """Store (or replace) the preference schema for ``schema.user_id``."""
        with self._lock:
            self._preferences[schema.user_id] = schema
        self._touch()
        self._emit("preferencesUpdated", schema)

    def get_user_preferences(self, user_id: str) -> Optional[PreferenceSchema]:
        with self._lock:
            return self._preferences.get(user_id)

    def analyze_opportunities(
        self,
        opportunities: List[ArbitrageOpportunity],
    ) -> List[AllocationRecommendation]:
        """
        Recompute recommendations for every known user.

        Errors are logged and yield an empty list; the agent always returns
        to idle.

        Args:
            opportunities: The complete set of live opportunities

        Returns:
            All recommendations produced, across users
        """
        self._set_status(AgentStatus.PROCESSING)
        self._touch()

        try:
            with self._lock:
                schemas = list(self._preferences.values())

            produced: List[AllocationRecommendation] = []
            for schema in schemas:
                recommendations = self._match_user(schema, opportunities)

                with self._lock:
                    self._recommendations[schema.user_id] = recommendations
                produced.extend(recommendations)

                for recommendation in recommendations:
                    self._announce_recommendation(recommendation, schema)

            self.logger.info(
                f"Analysis complete: {len(produced)} recommendations for {len(schemas)} users"
            )
            return produced
        except Exception as e:
            self.logger.error(f"Error analyzing opportunities: {e}", exc_info=True)
            return []
        finally:
            self._set_status(AgentStatus.IDLE)

    def _match_user(
        self,
        schema: PreferenceSchema,
        opportunities: List[ArbitrageOpportunity],
    ) -> List[AllocationRecommendation]:
        candidates = filter_opportunities(opportunities, schema)
        if not candidates:
            self.logger.debug(f"No suitable opportunities for {schema.user_id}")
            return []

        commentary = self._ask_llm(
            "match_opportunities",
            schema.preferences.to_dict(),
            [opp.to_dict() for opp in candidates],
        )
        if not commentary.ok:
            self.logger.debug(f"Allocation commentary unavailable: {commentary.error}")

        return allocate(
            schema,
            candidates,
            now=self._clock(),
            max_recommendations=self.max_recommendations,
            min_allocation=self.min_allocation,
        )

    def _announce_recommendation(
        self,
        recommendation: AllocationRecommendation,
        schema: PreferenceSchema,
    ) -> None:
        context = (
            f"New allocation recommendation for user {schema.user_id}: "
            f"{recommendation.reasoning}"
        )
        content = self._generate_message_content(context, MessageType.INFO)
        self.send_message(self.create_message(content, MessageType.INFO, data=recommendation))
        self._emit("recommendation", recommendation)

    def get_user_recommendations(self, user_id: str) -> List[AllocationRecommendation]:
        """Latest recommendations for ``user_id`` (empty if none)."""
        with self._lock:
            return list(self._recommendations.get(user_id, []))

    def respond_to_message(self, message: AgentMessage) -> None:
        """Reply to any routed message with a generic acknowledgement."""
        self._touch()
        content = self._generate_message_content(
            f"Processing request: {message.content}",
            MessageType.RESPONSE,
            fallback=(
                "Matching Agent: request received. Allocations will be "
                "recomputed on the next opportunity update."
            ),
        )
        self.send_message(
            self.create_message(content, MessageType.RESPONSE, recipient_id=message.agent_id)
        )
