"""
Agent Domain Models

Data structures shared by the preference, opportunity and matching agents:
user preferences and their derived schema, arbitrage opportunities,
allocation recommendations, and orchestrator system log entries.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import PreferenceValidationError


class RiskLevel(Enum):
    """Ordinal risk classification shared by users and opportunities."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Numeric rank used for compatibility checks (low=1 < medium=2 < high=3)."""
        return {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}[self]


class TimeHorizon(Enum):
    """How long the user is willing to keep capital deployed."""
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class OpportunityType(Enum):
    """Kinds of arbitrage opportunity."""
    DEX_ARBITRAGE = "dex-arbitrage"
    CROSS_CHAIN = "cross-chain"
    LENDING_BORROWING = "lending-borrowing"
    STAKING_REWARDS = "staking-rewards"


class OpportunityStatus(Enum):
    """Lifecycle of an opportunity."""
    ACTIVE = "active"
    EXECUTING = "executing"
    COMPLETED = "completed"
    EXPIRED = "expired"


class LogLevel(Enum):
    """Severity of an orchestrator system log entry."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class UserPreferences:
    """
    Structured representation of a user's stated investment intent.

    Attributes:
        risk_tolerance: Highest opportunity risk tier the user accepts
        max_investment: Total capital available for allocation
        preferred_assets: Lowercase asset symbols, never empty
        time_horizon: Short, medium or long
        min_return_rate: Minimum acceptable expected return, in percent
        excluded_protocols: Protocol names the user never wants exposure to
    """
    risk_tolerance: RiskLevel
    max_investment: float
    preferred_assets: Tuple[str, ...]
    time_horizon: TimeHorizon
    min_return_rate: float
    excluded_protocols: Tuple[str, ...] = ()

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        default_assets: Tuple[str, ...] = ("eth", "usdc"),
    ) -> "UserPreferences":
        """
        Build preferences from a loosely structured dictionary.

        Accepts both camelCase keys (as produced by the text-generation
        service) and snake_case keys.

        Raises:
            PreferenceValidationError: If a field is missing or invalid
        """
        if not isinstance(data, dict):
            raise PreferenceValidationError(
                f"Expected a JSON object, got {type(data).__name__}"
            )

        try:
            risk = RiskLevel(str(_first_present(data, "riskTolerance", "risk_tolerance")).lower())
            horizon = TimeHorizon(str(_first_present(data, "timeHorizon", "time_horizon")).lower())
            max_investment = float(_first_present(data, "maxInvestment", "max_investment"))
            min_return_rate = float(_first_present(data, "minReturnRate", "min_return_rate"))
        except (TypeError, ValueError) as e:
            raise PreferenceValidationError(f"Invalid preference field: {e}") from e

        if not math.isfinite(max_investment) or not math.isfinite(min_return_rate):
            raise PreferenceValidationError("maxInvestment and minReturnRate must be finite")
        if max_investment <= 0:
            raise PreferenceValidationError("maxInvestment must be positive")

        assets = _first_present(data, "preferredAssets", "preferred_assets") or []
        excluded = _first_present(data, "excludedProtocols", "excluded_protocols") or []
        if not isinstance(assets, (list, tuple)) or not isinstance(excluded, (list, tuple)):
            raise PreferenceValidationError("Asset and protocol lists must be arrays")

        normalized_assets = tuple(str(a).strip().lower() for a in assets if str(a).strip())

        return cls(
            risk_tolerance=risk,
            max_investment=max_investment,
            preferred_assets=normalized_assets or tuple(default_assets),
            time_horizon=horizon,
            min_return_rate=min_return_rate,
            excluded_protocols=tuple(str(p).strip() for p in excluded if str(p).strip()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "risk_tolerance": self.risk_tolerance.value,
            "max_investment": self.max_investment,
            "preferred_assets": list(self.preferred_assets),
            "time_horizon": self.time_horizon.value,
            "min_return_rate": self.min_return_rate,
            "excluded_protocols": list(self.excluded_protocols),
        }


@dataclass(frozen=True)
class SchemaConstraints:
    """Execution constraints derived from user preferences."""
    max_slippage: float
    min_liquidity: float
    gas_limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_slippage": self.max_slippage,
            "min_liquidity": self.min_liquidity,
            "gas_limit": self.gas_limit,
        }


@dataclass(frozen=True)
class PreferenceSchema:
    """
    Constraint-bearing preference schema for a single user.

    A new schema replaces any earlier schema for the same user.
    """
    id: str
    user_id: str
    preferences: UserPreferences
    generated_at: datetime
    constraints: SchemaConstraints

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "preferences": self.preferences.to_dict(),
            "generated_at": self.generated_at.isoformat(),
            "constraints": self.constraints.to_dict(),
        }


@dataclass
class ArbitrageOpportunity:
    """
    A price discrepancy between two protocols with a bounded validity window.

    Attributes:
        id: Unique opportunity identifier
        type: Opportunity kind
        asset_pair: Pair label such as "ETH/USDC"
        protocol_a: Protocol quoting the lower price
        protocol_b: Protocol quoting the higher price
        price_a: Pair price on protocol A
        price_b: Pair price on protocol B
        expected_return: Expected return in percent
        required_capital: Capital needed to capture the opportunity
        gas_estimate: Estimated gas units for execution
        risk: Risk tier derived from the spread
        liquidity: Available liquidity in USD
        time_decay: Minutes over which the edge decays
        detected_at: Detection time
        expires_at: Expiry time, always later than detected_at
        status: Lifecycle status
    """
    id: str
    type: OpportunityType
    asset_pair: str
    protocol_a: str
    protocol_b: str
    price_a: float
    price_b: float
    expected_return: float
    required_capital: float
    gas_estimate: float
    risk: RiskLevel
    liquidity: float
    time_decay: float
    detected_at: datetime
    expires_at: datetime
    status: OpportunityStatus = OpportunityStatus.ACTIVE

    def __post_init__(self):
        if self.expires_at <= self.detected_at:
            raise ValueError(
                f"Opportunity {self.id} expires at {self.expires_at} "
                f"which is not after detection at {self.detected_at}"
            )

    @property
    def spread_pct(self) -> float:
        """Price spread between the two protocols, in percent."""
        return (self.price_b - self.price_a) / self.price_a * 100

    def minutes_remaining(self, now: datetime) -> float:
        """Minutes until expiry (negative once expired)."""
        return (self.expires_at - now).total_seconds() / 60

    def is_active(self, now: datetime) -> bool:
        """Whether the opportunity can still be matched at ``now``."""
        return self.status is OpportunityStatus.ACTIVE and self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "asset_pair": self.asset_pair,
            "protocol_a": self.protocol_a,
            "protocol_b": self.protocol_b,
            "price_a": self.price_a,
            "price_b": self.price_b,
            "expected_return": self.expected_return,
            "required_capital": self.required_capital,
            "gas_estimate": self.gas_estimate,
            "risk": self.risk.value,
            "liquidity": self.liquidity,
            "time_decay": self.time_decay,
            "detected_at": self.detected_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class AllocationRecommendation:
    """A bounded capital allocation from a user's budget to one opportunity."""
    opportunity_id: str
    user_id: str
    allocated_amount: float
    confidence: float
    reasoning: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "user_id": self.user_id,
            "allocated_amount": self.allocated_amount,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SystemLog:
    """Orchestrator log entry surfaced to the UI layer."""
    level: LogLevel
    source: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "source": self.source,
            "message": self.message,
            "data": self.data,
        }
