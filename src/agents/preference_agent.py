"""
Preference Agent

Turns free-text user input into a structured, constraint-bearing preference
schema. The text-generation service is consulted first; a deterministic
keyword extractor takes over whenever the service fails or returns something
that is not a valid preference object.
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, Optional

from .base_agent import AgentMessage, AgentStatus, AgentType, BaseAgent, Clock, MessageType
from .exceptions import PreferenceValidationError
from .llm_client import CompletionResult
from .models import (
    PreferenceSchema,
    RiskLevel,
    SchemaConstraints,
    TimeHorizon,
    UserPreferences,
)

logger = logging.getLogger(__name__)

ASSET_VOCABULARY = ("eth", "btc", "usdc", "usdt", "dai", "matic", "arb", "op")
DEFAULT_ASSETS = ("eth", "usdc")
DEFAULT_MAX_INVESTMENT = 1000.0
DEFAULT_MIN_RETURN_RATE = 5.0

LOW_RISK_KEYWORDS = ("conservative", "low risk", "safe")
HIGH_RISK_KEYWORDS = ("aggressive", "high risk", "risky")
SHORT_HORIZON_KEYWORDS = ("short", "quick", "fast")
LONG_HORIZON_KEYWORDS = ("long", "hold")

AMOUNT_PATTERN = re.compile(r"\$?(\d+(?:,\d{3})*(?:\.\d+)?)")
# A range such as "3-7%" yields its lower bound
RETURN_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(?:\s*-\s*\d+(?:\.\d+)?)?\s*%")
WORD_PATTERN = re.compile(r"[a-z]+")
JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

SLIPPAGE_RISK_MULTIPLIERS = {RiskLevel.LOW: 0.5, RiskLevel.MEDIUM: 1.0, RiskLevel.HIGH: 2.0}
BASE_SLIPPAGE_PCT = 5.0
MAX_SLIPPAGE_PCT = 10.0
HIGH_RISK_GAS_LIMIT = 500_000
DEFAULT_GAS_LIMIT = 200_000


def extract_preferences_from_text(text: str) -> UserPreferences:
    """
    Deterministic keyword extraction of preferences from free text.

    Args:
        text: Raw user input

    Returns:
        UserPreferences with defaults for anything not mentioned
    """
    lower = text.lower()

    risk = RiskLevel.MEDIUM
    if any(keyword in lower for keyword in LOW_RISK_KEYWORDS):
        risk = RiskLevel.LOW
    elif any(keyword in lower for keyword in HIGH_RISK_KEYWORDS):
        risk = RiskLevel.HIGH

    amount_match = AMOUNT_PATTERN.search(text)
    max_investment = (
        float(amount_match.group(1).replace(",", "")) if amount_match else DEFAULT_MAX_INVESTMENT
    )
    if max_investment <= 0:
        max_investment = DEFAULT_MAX_INVESTMENT

    words = set(WORD_PATTERN.findall(lower))
    assets = tuple(asset for asset in ASSET_VOCABULARY if asset in words)

    horizon = TimeHorizon.MEDIUM
    if any(keyword in lower for keyword in SHORT_HORIZON_KEYWORDS):
        horizon = TimeHorizon.SHORT
    elif any(keyword in lower for keyword in LONG_HORIZON_KEYWORDS):
        horizon = TimeHorizon.LONG

    return_match = RETURN_PATTERN.search(text)
    min_return_rate = float(return_match.group(1)) if return_match else DEFAULT_MIN_RETURN_RATE

    return UserPreferences(
        risk_tolerance=risk,
        max_investment=max_investment,
        preferred_assets=assets or DEFAULT_ASSETS,
        time_horizon=horizon,
        min_return_rate=min_return_rate,
    )


def parse_preferences_response(response_text: str) -> UserPreferences:
    """
    Parse a JSON preference object returned by the text-generation service.

    Markdown code fences around the JSON are tolerated.

    Raises:
        PreferenceValidationError: If the text is not a valid preference object
    """
    fenced = JSON_FENCE_PATTERN.search(response_text)
    payload = fenced.group(1) if fenced else response_text

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise PreferenceValidationError(f"Response is not valid JSON: {e}") from e

    return UserPreferences.from_dict(data, default_assets=DEFAULT_ASSETS)


def derive_constraints(preferences: UserPreferences) -> SchemaConstraints:
    """
    Derive execution constraints from preferences.

    Slippage scales with risk tolerance (capped at 10%), minimum liquidity is
    twice the investment, and high-risk users get a larger gas budget.
    """
    multiplier = SLIPPAGE_RISK_MULTIPLIERS[preferences.risk_tolerance]
    return SchemaConstraints(
        max_slippage=min(BASE_SLIPPAGE_PCT * multiplier, MAX_SLIPPAGE_PCT),
        min_liquidity=preferences.max_investment * 2,
        gas_limit=(
            HIGH_RISK_GAS_LIMIT
            if preferences.risk_tolerance is RiskLevel.HIGH
            else DEFAULT_GAS_LIMIT
        ),
    )


class PreferenceAgent(BaseAgent):
    """
    Preference Agent - converts user text into preference schemas.

    Events:
        message: Info message announcing each new schema
        schemaGenerated: PreferenceSchema produced for a user
    """

    AGENT_ID = "preference-agent-001"
    AGENT_NAME = "Preference Schema Agent"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        llm_client=None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            agent_id=self.AGENT_ID,
            agent_type=AgentType.PREFERENCE,
            name=self.AGENT_NAME,
            config=config,
            llm_client=llm_client,
            clock=clock,
        )

    def process_user_preferences(self, user_input: str, user_id: str) -> PreferenceSchema:
        """
        Build a preference schema from free text.

        Service failures never surface here: they fall back to keyword
        extraction. Anything else (a defect) propagates to the caller.

        Args:
            user_input: The user's description of their goals
            user_id: Owning user id

        Returns:
            The new PreferenceSchema
        """
        self._set_status(AgentStatus.PROCESSING)
        self._touch()

        try:
            result = self._ask_llm("generate_schema", user_input)
            preferences = self._resolve_preferences(result, user_input)

            schema = PreferenceSchema(
                id=f"pref-{uuid.uuid4().hex[:12]}-{user_id}",
                user_id=user_id,
                preferences=preferences,
                generated_at=self._clock(),
                constraints=derive_constraints(preferences),
            )

            self._broadcast_schema(schema)
            self._set_status(AgentStatus.IDLE)
            self._emit("schemaGenerated", schema)

            self.logger.info(
                f"Schema generated for {user_id}: "
                f"risk={preferences.risk_tolerance.value}, "
                f"max_investment={preferences.max_investment:,.2f}, "
                f"assets={','.join(preferences.preferred_assets)}"
            )
            return schema
        except Exception as e:
            self._set_status(AgentStatus.IDLE)
            self.logger.error(f"Error processing user preferences for {user_id}: {e}")
            raise

    def _resolve_preferences(self, result: CompletionResult, user_input: str) -> UserPreferences:
        if not result.ok:
            self.logger.warning(f"Schema generation unavailable, using keyword extraction: {result.error}")
            return extract_preferences_from_text(user_input)

        try:
            return parse_preferences_response(result.text)
        except PreferenceValidationError as e:
            self.logger.info(f"Malformed schema response, using keyword extraction: {e}")
            return extract_preferences_from_text(user_input)

    def _broadcast_schema(self, schema: PreferenceSchema) -> None:
        prefs = schema.preferences
        context = (
            f"New user preference schema generated: {prefs.risk_tolerance.value} risk, "
            f"{prefs.max_investment:,.2f} max investment, "
            f"preferred assets: {', '.join(prefs.preferred_assets)}"
        )
        content = self._generate_message_content(context, MessageType.INFO)
        self.send_message(self.create_message(content, MessageType.INFO, data=schema))

    def respond_to_message(self, message: AgentMessage) -> None:
        """Answer clarification requests from the matching agent."""
        if message.agent_type is not AgentType.MATCHING or message.message_type is not MessageType.REQUEST:
            return

        self._touch()
        content = self._generate_message_content(
            f"Responding to matching agent request: {message.content}",
            MessageType.RESPONSE,
            fallback=(
                "Preference Agent: user risk constraints are unchanged. "
                "Allocate within each user's stated tolerance and budget."
            ),
        )
        self.send_message(
            self.create_message(content, MessageType.RESPONSE, recipient_id=message.agent_id)
        )
