"""
LLM Client Module

Chat-completions client for the text-generation service the agents consult.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

# Module-level singleton
_llm_client: Optional["LLMClient"] = None
_lock = threading.Lock()


def get_llm_client(config: Optional[Dict[str, Any]] = None) -> "LLMClient":
    """
    Get or create the singleton LLMClient instance.

    Args:
        config: Configuration dictionary with LLM settings

    Returns:
        LLMClient singleton instance
    """
    global _llm_client
    with _lock:
        if _llm_client is None:
            _llm_client = LLMClient(config or {})
        return _llm_client


@dataclass(frozen=True)
class CompletionResult:
    """
    Outcome of a text-generation call: either text or the error that occurred.

    Callers branch on ``ok`` and supply their own deterministic fallback.
    """
    text: Optional[str] = None
    error: Optional[ExternalServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None

    def unwrap_or(self, fallback: str) -> str:
        """Return the generated text, or ``fallback`` on failure or empty output."""
        if self.ok and self.text.strip():
            return self.text
        return fallback


AGENT_PERSONAS = {
    "preference": {
        "role": "Quantitative Risk Analyst",
        "traits": "Methodical and precise. Talks in terms of risk budgets, "
                  "constraints and portfolio theory.",
        "expertise": "client preference modeling, VaR, position limits",
    },
    "arbitrage": {
        "role": "DeFi Market Specialist",
        "traits": "Alert and opportunistic. Uses trading and market "
                  "microstructure vocabulary.",
        "expertise": "cross-protocol arbitrage, liquidity analysis, gas costs, execution windows",
    },
    "matching": {
        "role": "Portfolio Optimization Engineer",
        "traits": "Analytical and systematic. Focused on allocation sizing "
                  "and risk-return balance.",
        "expertise": "position sizing, allocation, execution efficiency",
    },
}


class LLMClient:
    """
    Client for an OpenAI-compatible chat-completions endpoint.

    Features:
    - Simple interface for text generation
    - Rate limiting, timeout and retry logic
    - Curated system prompts per agent call site
    - Graceful degradation if the API is unavailable
    """

    DEFAULT_MODEL = "gpt-4"
    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
    MAX_RETRIES = 3
    RETRY_DELAY = 1.0  # seconds
    REQUEST_TIMEOUT = 30.0  # seconds

    def __init__(self, config: Dict[str, Any], session: Optional[requests.Session] = None):
        """
        Initialize the LLM client.

        Args:
            config: Configuration dictionary with optional keys:
                - llm_model: Model to use (default: env LLM_MODEL or gpt-4)
                - llm_base_url: API base URL (default: env LLM_BASE_URL)
                - llm_api_key: API key (default: env LLM_API_KEY)
                - use_llm: Whether to enable LLM features (default: True)
                - request_timeout_seconds: Per-request timeout
                - max_retries / retry_delay_seconds / min_request_interval_seconds
            session: Optional requests session (mainly for tests)
        """
        self.config = config
        self.model = config.get("llm_model") or os.environ.get("LLM_MODEL", self.DEFAULT_MODEL)
        self.base_url = (
            config.get("llm_base_url") or os.environ.get("LLM_BASE_URL", self.DEFAULT_BASE_URL)
        ).rstrip("/")
        self.enabled = config.get("use_llm", True)
        self.timeout = config.get("request_timeout_seconds", self.REQUEST_TIMEOUT)
        self.max_retries = max(1, config.get("max_retries", self.MAX_RETRIES))
        self.retry_delay = config.get("retry_delay_seconds", self.RETRY_DELAY)

        self._session = session
        self._api_key: Optional[str] = None
        self._last_request_time = 0.0
        self._min_request_interval = config.get("min_request_interval_seconds", 0.5)
        self._rate_lock = threading.Lock()

        if self.enabled:
            self._init_client()

    def _init_client(self) -> None:
        """Resolve credentials and create the HTTP session."""
        api_key = self.config.get("llm_api_key") or os.environ.get("LLM_API_KEY")

        if not api_key:
            logger.warning("LLM_API_KEY not set. LLM features will be disabled.")
            self.enabled = False
            return

        self._api_key = api_key
        if self._session is None:
            self._session = requests.Session()
        logger.info(f"LLM client initialized with model: {self.model}")

    def _rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._min_request_interval:
                time.sleep(self._min_request_interval - elapsed)
            self._last_request_time = time.time()

    def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        system_prompt: Optional[str] = None,
    ) -> str:
        """
        Request a chat completion.

        Args:
            messages: Chat messages ({"role", "content"} dicts)
            model: Model override
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response
            system_prompt: Optional system prompt prepended to the messages

        Returns:
            Generated text (may be empty)

        Raises:
            ExternalServiceError: On network failure, timeout, non-2xx
                responses after all retries, or when the client is disabled
        """
        if not self.is_available():
            raise ExternalServiceError("LLM client not enabled")

        system = [{"role": "system", "content": system_prompt}] if system_prompt else []
        body = {
            "model": model or self.model,
            "messages": system + list(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        last_error = ExternalServiceError("LLM request was not attempted")
        for attempt in range(self.max_retries):
            self._rate_limit()
            try:
                response = self._session.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=headers,
                    timeout=self.timeout,
                )
                if not response.ok:
                    raise ExternalServiceError(
                        f"API error {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                return self._extract_content(response.json())
            except ExternalServiceError as e:
                last_error = e
            except (requests.RequestException, ValueError) as e:
                last_error = ExternalServiceError(f"Request failed: {e}")

            logger.warning(
                f"LLM request failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
            )
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (attempt + 1))

        logger.error("LLM request failed after all retries")
        raise last_error

    @staticmethod
    def _extract_content(data: Any) -> str:
        if not isinstance(data, dict):
            raise ExternalServiceError("Malformed completion response")
        choices = data.get("choices") or [{}]
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ExternalServiceError("Malformed completion response")
        message = choices[0].get("message") or {}
        if not isinstance(message, dict):
            raise ExternalServiceError("Malformed completion response")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ExternalServiceError("Malformed completion response")
        return content

    def try_complete(self, messages: List[Dict[str, str]], **kwargs: Any) -> CompletionResult:
        """Same as ``complete`` but returns a CompletionResult instead of raising."""
        try:
            return CompletionResult(text=self.complete(messages, **kwargs))
        except ExternalServiceError as e:
            return CompletionResult(error=e)

    def generate_schema(self, user_input: str) -> CompletionResult:
        """
        Convert free-text investment preferences into a JSON preference object.

        Args:
            user_input: The user's description of their goals

        Returns:
            CompletionResult whose text should be a JSON object
        """
        system_prompt = """You are a quantitative analyst who turns natural-language DeFi
investment preferences into machine-readable constraints.

Return ONLY a JSON object with exactly these keys:
{
  "riskTolerance": "low|medium|high",
  "maxInvestment": <number>,
  "preferredAssets": ["<symbol>", ...],
  "timeHorizon": "short|medium|long",
  "minReturnRate": <percentage number>,
  "excludedProtocols": ["<protocol>", ...]
}

Guidelines:
- Use standard token symbols (ETH, WBTC, USDC, USDT, DAI, ARB, OP, MATIC)
- short: under 24 hours, medium: 1-7 days, long: over 7 days
- Keep minReturnRate realistic for the stated risk level"""

        prompt = f"Convert this user preference description into a structured schema: {user_input}"

        return self.try_complete(
            [{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            temperature=0.2,
        )

    def find_arbitrage_opportunities(self, market_summary: Dict[str, Any]) -> CompletionResult:
        """
        Ask for a market analysis of cross-protocol price discrepancies.

        Args:
            market_summary: Snapshot summary (spreads, gas price, network load)

        Returns:
            CompletionResult with free-form analysis text
        """
        system_prompt = """You are a DeFi market microstructure researcher.
Analyze the supplied cross-protocol price data and describe arbitrage opportunities.
For each opportunity give the pair, protocols, expected margin after gas,
required capital, risk level (low/medium/high) and how long the window is likely to last.
Be concise and data-driven."""

        prompt = (
            "Analyze this market data and identify arbitrage opportunities:\n"
            f"{json.dumps(market_summary, default=str)}"
        )

        return self.try_complete(
            [{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            temperature=0.3,
        )

    def match_opportunities(
        self,
        preferences: Dict[str, Any],
        opportunities: List[Dict[str, Any]],
    ) -> CompletionResult:
        """
        Ask for an allocation commentary matching a user to opportunities.

        Args:
            preferences: User preference dictionary
            opportunities: Candidate opportunities as dictionaries

        Returns:
            CompletionResult with free-form allocation commentary
        """
        system_prompt = """You are a portfolio optimization specialist for DeFi arbitrage.
Given a user's risk profile and a list of candidate opportunities, suggest an
allocation: percentage and amount per opportunity, reasoning, and the main risks.
Never exceed the user's maximum investment. Keep low-risk users on low-risk opportunities."""

        prompt = (
            f"Match these user preferences: {json.dumps(preferences, default=str)} "
            f"with these opportunities: {json.dumps(opportunities, default=str)}"
        )

        return self.try_complete(
            [{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            temperature=0.4,
        )

    def generate_agent_message(
        self,
        agent_type: str,
        context: str,
        message_type: str,
    ) -> CompletionResult:
        """
        Write an inter-agent message in the voice of the given agent.

        Args:
            agent_type: preference, arbitrage or matching
            context: Facts the message must convey
            message_type: info, request, response or alert

        Returns:
            CompletionResult with a short message
        """
        persona = AGENT_PERSONAS.get(agent_type, AGENT_PERSONAS["arbitrage"])

        system_prompt = f"""You are the {persona['role']} in a multi-agent arbitrage advisory system.
Personality: {persona['traits']}
Expertise: {persona['expertise']}

Message types:
- alert: urgent, time-sensitive opportunity or risk
- info: status updates and analysis results
- request: ask another agent for specific data
- response: answer a request with supporting rationale

Write 2-3 professional sentences. Include the numbers from the context."""

        prompt = f"Generate a {message_type} message for agent communication. Context: {context}"

        return self.try_complete(
            [{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            temperature=0.7,
        )

    def is_available(self) -> bool:
        """Check if the LLM client is available and enabled."""
        return self.enabled and self._session is not None and self._api_key is not None

    def get_status(self) -> Dict[str, Any]:
        """Get LLM client status."""
        return {
            "enabled": self.enabled,
            "available": self.is_available(),
            "model": self.model,
            "base_url": self.base_url,
        }
