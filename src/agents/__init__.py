"""
Multi-Agent Arbitrage Advisory System

This package provides cooperating agents that turn user investment goals into
allocation recommendations for short-lived DeFi arbitrage opportunities:

3-Agent Architecture:
- PreferenceAgent: Free-text goals -> structured preference schema
- OpportunityAgent: Periodic market scan -> time-bounded opportunities
- MatchingAgent: Preferences x opportunities -> capital allocations

The AgentOrchestrator wires the agents together, routes their messages and
drives the scan loop using APScheduler.
"""

from .base_agent import (
    AgentCapability,
    AgentMessage,
    AgentStatus,
    AgentType,
    BaseAgent,
    EventEmitter,
    MessageType,
)
from .exceptions import AgentError, ExternalServiceError, PreferenceValidationError
from .llm_client import CompletionResult, LLMClient, get_llm_client
from .models import (
    AllocationRecommendation,
    ArbitrageOpportunity,
    LogLevel,
    OpportunityStatus,
    OpportunityType,
    PreferenceSchema,
    RiskLevel,
    SchemaConstraints,
    SystemLog,
    TimeHorizon,
    UserPreferences,
)

# Agents
from .preference_agent import PreferenceAgent
from .opportunity_agent import MarketSnapshot, OpportunityAgent
from .matching_agent import MatchingAgent

# Orchestration
from .orchestrator import AgentOrchestrator, get_orchestrator

__all__ = [
    # Enums and data classes
    "AgentType",
    "AgentStatus",
    "MessageType",
    "AgentMessage",
    "RiskLevel",
    "TimeHorizon",
    "OpportunityType",
    "OpportunityStatus",
    "LogLevel",
    "UserPreferences",
    "SchemaConstraints",
    "PreferenceSchema",
    "ArbitrageOpportunity",
    "AllocationRecommendation",
    "SystemLog",
    "MarketSnapshot",
    # Errors
    "AgentError",
    "ExternalServiceError",
    "PreferenceValidationError",
    # Base classes
    "EventEmitter",
    "AgentCapability",
    "BaseAgent",
    # Infrastructure
    "CompletionResult",
    "LLMClient",
    "get_llm_client",
    # Agents
    "PreferenceAgent",
    "OpportunityAgent",
    "MatchingAgent",
    # Orchestration
    "AgentOrchestrator",
    "get_orchestrator",
]
