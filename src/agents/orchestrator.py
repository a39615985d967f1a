"""
Agent Orchestrator

Coordinator for the multi-agent advisory system.
Owns the three agents, routes their messages, keeps the system-wide message
history and log, and exposes lifecycle and query operations to the UI layer.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base_agent import (
    AgentCapability,
    AgentMessage,
    AgentType,
    Clock,
    EventEmitter,
    MessageType,
)
from .llm_client import get_llm_client
from .matching_agent import MatchingAgent
from .models import (
    AllocationRecommendation,
    ArbitrageOpportunity,
    LogLevel,
    PreferenceSchema,
    SystemLog,
)
from .opportunity_agent import OpportunityAgent
from .preference_agent import PreferenceAgent

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL_MS = 15_000
DEFAULT_CONVERSATION_DELAY = 1.0

_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class AgentOrchestrator(EventEmitter):
    """
    Coordinates the preference, opportunity and matching agents.

    States: stopped -> running on start(), running -> stopped on stop().
    Both transitions are idempotent.

    Events:
        systemStarted / systemStopped: lifecycle transitions
        agentMessage: every AgentMessage recorded in history
        opportunityDiscovered: ArbitrageOpportunity found by a scan
        recommendationGenerated: AllocationRecommendation from matching
        preferencesProcessed: PreferenceSchema forwarded to matching
        systemLog: every SystemLog entry
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        llm_client=None,
        preference_agent: Optional[AgentCapability] = None,
        opportunity_agent: Optional[AgentCapability] = None,
        matching_agent: Optional[AgentCapability] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Agent configuration (loaded from config/ when omitted)
            llm_client: Text generation client shared by the agents
            preference_agent: Agent that turns user text into schemas
            opportunity_agent: Agent that scans for opportunities
            matching_agent: Agent that produces recommendations
            clock: Callable returning the current time
        """
        super().__init__()

        if config is None:
            from config.settings import Settings
            config = Settings.load_config()
        self.config = config

        orchestrator_config = config.get("orchestrator", {})
        self.scan_interval_ms = orchestrator_config.get("scan_interval_ms", DEFAULT_SCAN_INTERVAL_MS)
        self.conversation_delay = orchestrator_config.get(
            "conversation_delay_seconds", DEFAULT_CONVERSATION_DELAY
        )
        self._debug_mode = orchestrator_config.get("debug_mode", True)
        self._clock: Clock = clock or datetime.now

        if llm_client is None and config.get("use_llm", True):
            llm_client = get_llm_client(config)
        self.llm_client = llm_client

        self.preference_agent = preference_agent or PreferenceAgent(
            config=config, llm_client=llm_client
        )
        self.opportunity_agent = opportunity_agent or OpportunityAgent(
            config=config, llm_client=llm_client
        )
        self.matching_agent = matching_agent or MatchingAgent(
            config=config, llm_client=llm_client
        )
        self.agents: Dict[str, AgentCapability] = {
            agent.id: agent
            for agent in (self.preference_agent, self.opportunity_agent, self.matching_agent)
        }

        self._message_history: List[AgentMessage] = []
        self._system_logs: List[SystemLog] = []
        self._is_running = False
        self._lock = threading.RLock()

        self._setup_agent_communication()
        self._log(LogLevel.INFO, "orchestrator", "AgentOrchestrator initialized")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def debug_mode(self) -> bool:
        return self._debug_mode

    def _setup_agent_communication(self) -> None:
        self._log(LogLevel.DEBUG, "orchestrator", "Setting up agent communication channels")

        for agent in self.agents.values():
            agent.subscribe("message", self._handle_agent_message)

        self.preference_agent.subscribe("schemaGenerated", self._on_schema_generated)
        self.opportunity_agent.subscribe("opportunityFound", self._on_opportunity_found)
        self.opportunity_agent.subscribe("opportunityExpired", self._on_opportunity_expired)
        self.matching_agent.subscribe("recommendation", self._on_recommendation)
        self.matching_agent.subscribe("preferencesUpdated", self._on_preferences_updated)

        self._log(LogLevel.INFO, "orchestrator", "Agent communication channels established")

    def _log(
        self,
        level: LogLevel,
        source: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SystemLog:
        entry = SystemLog(
            level=level,
            source=source,
            message=message,
            timestamp=self._clock(),
            data=data,
        )
        with self._lock:
            self._system_logs.append(entry)

        if self._debug_mode or level in (LogLevel.WARN, LogLevel.ERROR):
            suffix = f" {data}" if data else ""
            logger.log(_LOGGING_LEVELS[level], f"{source}: {message}{suffix}")

        self._emit("systemLog", entry)
        return entry

    def _handle_agent_message(self, message: AgentMessage) -> None:
        with self._lock:
            self._message_history.append(message)

        self._log(
            LogLevel.DEBUG,
            "orchestrator",
            "Agent message received and logged",
            {
                "message_id": message.id,
                "from": message.agent_type.value,
                "to": message.recipient_id,
                "type": message.message_type.value,
            },
        )
        self._emit("agentMessage", message)
        self._route_message(message)

    def _route_message(self, message: AgentMessage) -> None:
        if not message.recipient_id:
            self._log(LogLevel.DEBUG, "orchestrator", "Message has no recipient, broadcasting")
            return

        recipient = self.agents.get(message.recipient_id)
        if recipient is None:
            self._log(LogLevel.WARN, "orchestrator", f"Unknown recipient: {message.recipient_id}")
            return

        self._log(
            LogLevel.DEBUG,
            "orchestrator",
            f"Delivering message to {recipient.name}",
            {"message_id": message.id, "message_type": message.message_type.value},
        )
        recipient.respond_to_message(message)

    def _on_schema_generated(self, schema: PreferenceSchema) -> None:
        prefs = schema.preferences
        self._log(
            LogLevel.INFO,
            "preference-agent",
            "User preference schema generated",
            {
                "user_id": schema.user_id,
                "risk_tolerance": prefs.risk_tolerance.value,
                "max_investment": prefs.max_investment,
                "preferred_assets": list(prefs.preferred_assets),
            },
        )
        self.matching_agent.add_user_preferences(schema)
        self._emit("preferencesProcessed", schema)

    def _on_opportunity_found(self, opportunity: ArbitrageOpportunity) -> None:
        self._log(
            LogLevel.INFO,
            "arbitrage-agent",
            "New arbitrage opportunity discovered",
            {
                "opportunity_id": opportunity.id,
                "asset_pair": opportunity.asset_pair,
                "expected_return": opportunity.expected_return,
                "risk": opportunity.risk.value,
                "required_capital": opportunity.required_capital,
            },
        )
        self._emit("opportunityDiscovered", opportunity)
        self._trigger_matching_analysis()

    def _on_opportunity_expired(self, opportunity: ArbitrageOpportunity) -> None:
        self._log(
            LogLevel.DEBUG,
            "arbitrage-agent",
            "Arbitrage opportunity expired",
            {"opportunity_id": opportunity.id, "asset_pair": opportunity.asset_pair},
        )

    def _on_recommendation(self, recommendation: AllocationRecommendation) -> None:
        self._log(
            LogLevel.INFO,
            "matching-agent",
            "New allocation recommendation generated",
            {
                "opportunity_id": recommendation.opportunity_id,
                "user_id": recommendation.user_id,
                "allocated_amount": recommendation.allocated_amount,
                "confidence": recommendation.confidence,
            },
        )
        self._emit("recommendationGenerated", recommendation)

    def _on_preferences_updated(self, schema: PreferenceSchema) -> None:
        self._log(
            LogLevel.DEBUG,
            "matching-agent",
            "User preferences updated in matching engine",
            {"user_id": schema.user_id},
        )

    def _trigger_matching_analysis(self) -> None:
        """Run matching against the complete live opportunity set."""
        active = self.opportunity_agent.get_active_opportunities()
        if not active:
            self._log(LogLevel.DEBUG, "orchestrator", "No active opportunities for matching analysis")
            return

        self._log(
            LogLevel.INFO,
            "orchestrator",
            f"Starting matching analysis with {len(active)} opportunities",
        )
        try:
            self.matching_agent.analyze_opportunities(active)
            self._log(LogLevel.INFO, "orchestrator", "Matching analysis completed successfully")
        except Exception as e:
            self._log(LogLevel.ERROR, "orchestrator", "Error during matching analysis", {"error": str(e)})

    def start(self) -> None:
        """Start periodic opportunity scanning."""
        with self._lock:
            if self._is_running:
                self._log(LogLevel.WARN, "orchestrator", "System already running")
                return
            self._is_running = True

        self._log(LogLevel.INFO, "orchestrator", "Starting multi-agent system")
        self._log(
            LogLevel.DEBUG,
            "orchestrator",
            f"Starting arbitrage agent scanning ({self.scan_interval_ms / 1000:.0f}s intervals)",
        )
        try:
            self.opportunity_agent.start_scanning(self.scan_interval_ms)
        except Exception as e:
            with self._lock:
                self._is_running = False
            self._log(LogLevel.ERROR, "orchestrator", "Failed to start scanning", {"error": str(e)})
            raise

        self._emit("systemStarted")
        self._log(LogLevel.INFO, "orchestrator", "Multi-agent system started successfully")

    def stop(self) -> None:
        """Stop periodic scanning. Scans already in flight complete."""
        with self._lock:
            if not self._is_running:
                self._log(LogLevel.WARN, "orchestrator", "System already stopped")
                return
            self._is_running = False

        self._log(LogLevel.INFO, "orchestrator", "Stopping multi-agent system")
        self.opportunity_agent.stop_scanning()

        self._emit("systemStopped")
        self._log(LogLevel.INFO, "orchestrator", "Multi-agent system stopped")

    def shutdown(self) -> None:
        """Stop the system and release the scheduler thread."""
        if self._is_running:
            self.stop()
        self.opportunity_agent.shutdown()

    def process_user_input(self, user_input: str, user_id: str) -> PreferenceSchema:
        """
        Turn user text into a preference schema and register it for matching.

        Raises:
            Exception: Whatever the preference agent raised; this is the one
                operation whose failures reach the caller
        """
        self._log(
            LogLevel.INFO,
            "orchestrator",
            f"Processing user input for {user_id}",
            {"input_length": len(user_input), "input_preview": user_input[:100]},
        )

        try:
            schema = self.preference_agent.process_user_preferences(user_input, user_id)
        except Exception as e:
            self._log(
                LogLevel.ERROR,
                "orchestrator",
                f"Error processing user input for {user_id}",
                {"error": str(e)},
            )
            raise

        self._log(LogLevel.INFO, "orchestrator", f"User preferences processed successfully for {user_id}")
        return schema

    def get_system_status(self) -> Dict[str, Any]:
        """
        Snapshot of agent states and aggregate metrics.

        Returns:
            Dictionary with is_running, agents and metrics
        """
        with self._lock:
            messages = list(self._message_history)
            log_count = len(self._system_logs)

        status = {
            "is_running": self._is_running,
            "agents": {
                key: {
                    "id": agent.id,
                    "name": agent.name,
                    "status": agent.status.value,
                    "last_activity": agent.last_activity,
                }
                for key, agent in (
                    ("preference", self.preference_agent),
                    ("arbitrage", self.opportunity_agent),
                    ("matching", self.matching_agent),
                )
            },
            "metrics": {
                "messages_exchanged": len(messages),
                "active_opportunities": len(self.opportunity_agent.get_active_opportunities()),
                "total_recommendations": sum(
                    1 for m in messages
                    if m.message_type is MessageType.INFO and m.agent_type is AgentType.MATCHING
                ),
                "system_logs": log_count,
            },
        }

        self._log(LogLevel.DEBUG, "orchestrator", "System status requested", dict(status["metrics"]))
        return status

    def simulate_agent_conversation(self, topic: str, delay_seconds: Optional[float] = None) -> List[AgentMessage]:
        """
        Push a scripted three-message exchange through the normal routing path.

        Args:
            topic: Subject the agents talk about
            delay_seconds: Pause between messages (default from config, 1s)

        Returns:
            The scripted messages, in send order
        """
        delay = self.conversation_delay if delay_seconds is None else delay_seconds
        self._log(LogLevel.INFO, "orchestrator", f"Simulating agent conversation about: {topic}")

        script = [
            (
                self.preference_agent,
                self.opportunity_agent,
                f"Hey Arbitrage Agent, I just processed a user who's interested in {topic}. "
                f"What opportunities do you see in this space?",
            ),
            (
                self.opportunity_agent,
                self.matching_agent,
                f"Matching Agent, I've found some {topic} opportunities. "
                f"The market is showing some interesting price discrepancies.",
            ),
            (
                self.matching_agent,
                self.preference_agent,
                f"Preference Agent, can you clarify the risk tolerance for users interested in "
                f"{topic}? I want to make sure my allocations are appropriate.",
            ),
        ]

        sent = []
        for i, (sender, recipient, content) in enumerate(script):
            if i > 0 and delay > 0:
                time.sleep(delay)

            self._log(
                LogLevel.DEBUG,
                "orchestrator",
                "Simulating conversation step",
                {"from": sender.id, "to": recipient.id, "message_preview": content[:50]},
            )
            message = AgentMessage(
                id=f"demo-{uuid.uuid4().hex}",
                agent_id=sender.id,
                agent_type=sender.agent_type,
                recipient_id=recipient.id,
                content=content,
                message_type=MessageType.INFO,
                timestamp=self._clock(),
            )
            self._handle_agent_message(message)
            sent.append(message)

        self._log(
            LogLevel.INFO,
            "orchestrator",
            f"Agent conversation simulation completed for topic: {topic}",
        )
        return sent

    def set_debug_mode(self, enabled: bool) -> None:
        """Toggle mirroring of debug/info entries to the logging module."""
        self._debug_mode = enabled
        self._log(LogLevel.INFO, "orchestrator", f"Debug mode {'enabled' if enabled else 'disabled'}")

    def clear_logs(self) -> None:
        """Empty message history and system log together."""
        with self._lock:
            self._system_logs.clear()
            self._message_history.clear()
            self._log(LogLevel.INFO, "orchestrator", "System logs and message history cleared")

    def get_messages(self) -> List[AgentMessage]:
        """Message history, newest first."""
        with self._lock:
            history = list(reversed(self._message_history))
        return sorted(history, key=lambda m: m.timestamp, reverse=True)

    def get_system_logs(self) -> List[SystemLog]:
        """System log, newest first."""
        with self._lock:
            logs = list(reversed(self._system_logs))
        return sorted(logs, key=lambda entry: entry.timestamp, reverse=True)

    def get_conversation(self, agent_a: str, agent_b: str) -> List[AgentMessage]:
        """Messages exchanged between two agent ids, oldest first."""
        pair = {agent_a, agent_b}
        with self._lock:
            return [
                m for m in self._message_history
                if m.recipient_id is not None and {m.agent_id, m.recipient_id} == pair
            ]

    def get_active_opportunities(self) -> List[ArbitrageOpportunity]:
        return self.opportunity_agent.get_active_opportunities()

    def get_all_opportunities_with_details(self) -> List[Dict[str, Any]]:
        """Active opportunities as dictionaries with remaining lifetime and spread."""
        now = self._clock()
        details = []
        for opp in self.opportunity_agent.get_active_opportunities():
            entry = opp.to_dict()
            entry["minutes_remaining"] = round(opp.minutes_remaining(now), 2)
            entry["spread_pct"] = round(opp.spread_pct, 4)
            details.append(entry)
        return details

    def get_user_recommendations(self, user_id: str) -> List[AllocationRecommendation]:
        return self.matching_agent.get_user_recommendations(user_id)


# Singleton instance
_orchestrator: Optional[AgentOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator(config: Optional[Dict[str, Any]] = None) -> AgentOrchestrator:
    """
    Get or create the singleton AgentOrchestrator instance.

    Args:
        config: Configuration dictionary (used on first call only)

    Returns:
        AgentOrchestrator singleton instance
    """
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = AgentOrchestrator(config)
        return _orchestrator
