"""
Base Agent Module

Provides the abstract base class, message structure and event fan-out used by
the preference, opportunity and matching agents.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from .exceptions import ExternalServiceError
from .llm_client import CompletionResult, LLMClient

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
EventHandler = Callable[..., Any]


class AgentType(Enum):
    """Defines the roles of agents in the system."""
    PREFERENCE = "preference"
    ARBITRAGE = "arbitrage"
    MATCHING = "matching"


class AgentStatus(Enum):
    """Coarse activity state reported to the UI."""
    ACTIVE = "active"
    IDLE = "idle"
    PROCESSING = "processing"


class MessageType(Enum):
    """Types of messages agents can exchange."""
    INFO = "info"            # Status updates and analysis results
    REQUEST = "request"      # Asking another agent for data or clarification
    RESPONSE = "response"    # Answer to a previous request
    ALERT = "alert"          # Time-sensitive notification


@dataclass(frozen=True)
class AgentMessage:
    """
    Represents a message exchanged between agents.

    Messages are append-only log entries and never mutated after creation.

    Attributes:
        agent_id: Id of the sending agent
        agent_type: Type tag of the sending agent
        content: Natural-language message body
        message_type: info, request, response or alert
        recipient_id: Id of the receiving agent; None means broadcast
        id: Unique message identifier
        timestamp: When the message was created
        data: Optional attached payload (opportunity, schema, recommendation)
    """
    agent_id: str
    agent_type: AgentType
    content: str
    message_type: MessageType
    recipient_id: Optional[str] = None
    id: str = field(default_factory=lambda: f"msg-{uuid.uuid4().hex}")
    timestamp: datetime = field(default_factory=datetime.now)
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for display or storage."""
        data = self.data
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        elif isinstance(data, list):
            data = [item.to_dict() if hasattr(item, "to_dict") else item for item in data]

        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "agent_type": self.agent_type.value,
            "recipient_id": self.recipient_id,
            "content": self.content,
            "message_type": self.message_type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": data,
        }

    def format_for_display(self) -> str:
        """Format message for human-readable display."""
        recipient = self.recipient_id.upper() if self.recipient_id else "ALL"
        lines = [
            f"[{self.agent_id.upper()} -> {recipient}] ({self.message_type.value})",
            "",
            self.content,
            "=" * 60,
        ]
        return "\n".join(lines)


class EventEmitter:
    """
    Minimal publish/subscribe fan-out.

    Handlers are called synchronously, in subscription order, on the thread
    that emits the event. A failing handler is logged and does not prevent
    the remaining handlers from running.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._subscribers_lock = threading.Lock()

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register ``handler`` to be called whenever ``event`` is emitted."""
        with self._subscribers_lock:
            self._subscribers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        """Remove a previously registered handler (no-op if absent)."""
        with self._subscribers_lock:
            handlers = self._subscribers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def clear_subscribers(self, event: Optional[str] = None) -> None:
        """Remove all handlers, or only those registered for ``event``."""
        with self._subscribers_lock:
            if event is None:
                self._subscribers.clear()
            else:
                self._subscribers.pop(event, None)

    def _emit(self, event: str, *args: Any) -> None:
        with self._subscribers_lock:
            handlers = list(self._subscribers.get(event, []))

        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)


class AgentCapability(Protocol):
    """What the orchestrator needs from any agent for routing and status."""
    id: str
    name: str
    agent_type: AgentType

    @property
    def status(self) -> AgentStatus: ...

    @property
    def last_activity(self) -> datetime: ...

    def respond_to_message(self, message: AgentMessage) -> None: ...

    def subscribe(self, event: str, handler: EventHandler) -> None: ...


class BaseAgent(EventEmitter, ABC):
    """
    Abstract base class for all agents in the system.

    Agents own their private working state, talk to the text-generation
    service on a best-effort basis, and publish messages and domain events to
    subscribers (normally the orchestrator).

    Events:
        message: An AgentMessage was sent by this agent
    """

    def __init__(
        self,
        agent_id: str,
        agent_type: AgentType,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        llm_client: Optional[LLMClient] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the base agent.

        Args:
            agent_id: Stable agent identifier used for routing
            agent_type: The agent's role in the system
            name: Human-readable agent name
            config: Configuration dictionary
            llm_client: Optional text-generation client
            clock: Callable returning the current time (defaults to datetime.now)
        """
        super().__init__()
        self.id = agent_id
        self.agent_type = agent_type
        self.name = name
        self.config = config or {}
        self.llm_client = llm_client
        self._clock: Clock = clock or datetime.now
        self.logger = logging.getLogger(f"agent.{agent_type.value}")

        self._status = AgentStatus.IDLE
        self._last_activity = self._clock()
        self._status_lock = threading.Lock()

    @property
    def status(self) -> AgentStatus:
        with self._status_lock:
            return self._status

    @property
    def last_activity(self) -> datetime:
        with self._status_lock:
            return self._last_activity

    def _set_status(self, status: AgentStatus) -> None:
        with self._status_lock:
            self._status = status

    def _touch(self) -> None:
        with self._status_lock:
            self._last_activity = self._clock()

    @abstractmethod
    def respond_to_message(self, message: AgentMessage) -> None:
        """
        Handle a message routed to this agent.

        Args:
            message: The message addressed to this agent
        """
        pass

    def create_message(
        self,
        content: str,
        message_type: MessageType,
        recipient_id: Optional[str] = None,
        data: Any = None,
    ) -> AgentMessage:
        """
        Create a new message from this agent.

        Args:
            content: Message body
            message_type: Type of message
            recipient_id: Receiving agent id, or None to broadcast
            data: Optional payload

        Returns:
            New AgentMessage instance
        """
        return AgentMessage(
            agent_id=self.id,
            agent_type=self.agent_type,
            content=content,
            message_type=message_type,
            recipient_id=recipient_id,
            timestamp=self._clock(),
            data=data,
        )

    def send_message(self, message: AgentMessage) -> None:
        """
        Publish a message to subscribers.

        Args:
            message: The message to send
        """
        self.logger.info(
            f"Sent {message.message_type.value} message to "
            f"{message.recipient_id or 'all agents'}"
        )
        self._emit("message", message)

    def _ask_llm(self, method: str, *args: Any, **kwargs: Any) -> CompletionResult:
        """Call a text-generation helper, turning a missing client into a failed result."""
        if self.llm_client is None:
            return CompletionResult(
                error=ExternalServiceError("No text generation client configured")
            )
        return getattr(self.llm_client, method)(*args, **kwargs)

    def _generate_message_content(
        self,
        context: str,
        message_type: MessageType,
        fallback: Optional[str] = None,
    ) -> str:
        """
        Produce persona-styled message text, falling back to a static string.

        Args:
            context: What the message should convey
            message_type: Type of message being written
            fallback: Text to use if generation fails (defaults to ``context``)

        Returns:
            Message text, never empty
        """
        result = self._ask_llm(
            "generate_agent_message",
            self.agent_type.value,
            context,
            message_type.value,
        )
        if not result.ok:
            self.logger.warning(f"Message generation unavailable, using fallback: {result.error}")
        return result.unwrap_or(fallback if fallback is not None else context)

    def get_status(self) -> Dict[str, Any]:
        """
        Get current agent status.

        Returns:
            Dictionary with status information
        """
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "last_activity": self.last_activity.isoformat(),
        }
