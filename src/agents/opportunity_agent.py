"""
Opportunity Agent

Periodically synthesizes a mock cross-protocol market, asks the
text-generation service for a best-effort analysis, and records short-lived
arbitrage opportunities.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .base_agent import AgentMessage, AgentStatus, AgentType, BaseAgent, Clock, MessageType
from .models import ArbitrageOpportunity, OpportunityStatus, OpportunityType, RiskLevel

logger = logging.getLogger(__name__)

BASE_PRICES = {
    "ETH": 3000.0,
    "USDC": 1.0,
    "USDT": 1.0,
    "DAI": 1.0,
    "WBTC": 65000.0,
    "ARB": 2.5,
    "OP": 3.2,
}
MARKET_PROTOCOLS = ("Uniswap V3", "SushiSwap", "Curve", "Balancer", "PancakeSwap", "QuickSwap")
PRICE_JITTER_SIGMA = 0.0125

ASSET_PAIRS = ("ETH/USDC", "WBTC/ETH", "ARB/USDC", "OP/ETH")
OPPORTUNITY_PROTOCOLS = ("Uniswap V3", "SushiSwap", "Curve", "Balancer")
MAX_OPPORTUNITIES_PER_SCAN = 3

MIN_SPREAD = 0.005
MAX_SPREAD = 0.035
LOW_RISK_SPREAD = 0.01
MEDIUM_RISK_SPREAD = 0.025

MIN_EXPIRY_MINUTES = 5.0
MAX_EXPIRY_MINUTES = 25.0
MIN_TIME_DECAY_MINUTES = 5.0
MAX_TIME_DECAY_MINUTES = 20.0

DEFAULT_SCAN_INTERVAL_MS = 30_000
SCAN_JOB_ID = "opportunity_scan"


def classify_risk(spread: float) -> RiskLevel:
    """Map a fractional price spread (0.012 = 1.2%) to a risk tier."""
    if spread < LOW_RISK_SPREAD:
        return RiskLevel.LOW
    if spread < MEDIUM_RISK_SPREAD:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


@dataclass
class MarketSnapshot:
    """
    Synthetic cross-protocol market at a point in time.

    Attributes:
        timestamp: Snapshot time
        prices: DataFrame with columns asset, protocol, price, liquidity, volume_24h
        gas_price_gwei: Network gas price
        network_load: Network utilisation, 0-100
    """
    timestamp: datetime
    prices: pd.DataFrame
    gas_price_gwei: float
    network_load: float

    def price(self, asset: str, protocol: str) -> float:
        """USD price of ``asset`` on ``protocol``."""
        indexed = self.prices.set_index(["asset", "protocol"])["price"]
        return float(indexed.loc[(asset, protocol)])

    def spreads(self) -> pd.DataFrame:
        """Per-asset cross-protocol price range, widest spread first."""
        grouped = self.prices.groupby("asset")["price"].agg(["min", "max"])
        grouped["spread_pct"] = (grouped["max"] - grouped["min"]) / grouped["min"] * 100
        return grouped.sort_values("spread_pct", ascending=False)

    def to_summary(self) -> Dict[str, Any]:
        """Compact dictionary suitable for a prompt."""
        spreads = self.spreads().round(6).reset_index()
        return {
            "timestamp": self.timestamp.isoformat(),
            "gas_price_gwei": round(self.gas_price_gwei, 2),
            "network_load": round(self.network_load, 1),
            "spreads": spreads.to_dict(orient="records"),
        }


class OpportunityAgent(BaseAgent):
    """
    Opportunity Agent - detects time-bounded arbitrage opportunities.

    States: idle -> active on start_scanning(), active -> idle on
    stop_scanning(). Each scan passes through processing and returns to
    active, including when the scan fails.

    Events:
        message: Alert message per new opportunity, responses to requests
        opportunityFound: ArbitrageOpportunity stored by a scan
        opportunityExpired: ArbitrageOpportunity evicted by the expiry sweep
    """

    AGENT_ID = "arb-agent-001"
    AGENT_NAME = "Arbitrage Detection Agent"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        llm_client=None,
        scheduler=None,
        rng: Optional[np.random.Generator] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the opportunity agent.

        Args:
            config: Agent configuration
            llm_client: Optional text-generation client
            scheduler: APScheduler scheduler (defaults to a BackgroundScheduler)
            rng: Random source for market and opportunity synthesis
            clock: Callable returning the current time
        """
        super().__init__(
            agent_id=self.AGENT_ID,
            agent_type=AgentType.ARBITRAGE,
            name=self.AGENT_NAME,
            config=config,
            llm_client=llm_client,
            clock=clock,
        )

        opp_config = self.config.get("opportunity", {})
        self.default_interval_ms = opp_config.get("default_interval_ms", DEFAULT_SCAN_INTERVAL_MS)

        self.scheduler = scheduler if scheduler is not None else BackgroundScheduler()
        self.rng = rng if rng is not None else np.random.default_rng()

        self._opportunities: Dict[str, ArbitrageOpportunity] = {}
        self._lock = threading.Lock()
        self._scanning = False

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def start_scanning(self, interval_ms: Optional[int] = None) -> None:
        """
        Scan immediately, then every ``interval_ms`` milliseconds.

        Args:
            interval_ms: Scan period (default from config, 30000)
        """
        interval_ms = interval_ms or self.default_interval_ms
        self._scanning = True
        self._set_status(AgentStatus.ACTIVE)

        self.scheduler.add_job(
            self.scan_for_opportunities,
            trigger=IntervalTrigger(seconds=interval_ms / 1000),
            id=SCAN_JOB_ID,
            name="Opportunity Scan",
            replace_existing=True,
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        self.logger.info(f"Opportunity scanning started every {interval_ms / 1000:.1f}s")

    def stop_scanning(self) -> None:
        """Cancel the repeating scan. A scan already in flight completes."""
        self._scanning = False
        self._set_status(AgentStatus.IDLE)

        try:
            self.scheduler.remove_job(SCAN_JOB_ID)
        except JobLookupError:
            self.logger.debug("No scan job scheduled")

        self.logger.info("Opportunity scanning stopped")

    def shutdown(self) -> None:
        """Stop scanning and release the scheduler thread."""
        self.stop_scanning()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def scan_for_opportunities(self) -> List[ArbitrageOpportunity]:
        """
        Run one scan tick.

        New opportunities are all stored before any opportunityFound event is
        emitted. Failures are logged and produce an empty result.

        Returns:
            Snapshots of the opportunities created by this tick
        """
        self._set_status(AgentStatus.PROCESSING)
        self._touch()

        try:
            snapshot = self.generate_market_data()

            analysis = self._ask_llm("find_arbitrage_opportunities", snapshot.to_summary())
            if analysis.ok:
                self.logger.debug(f"Market analysis received ({len(analysis.text)} chars)")
            else:
                self.logger.warning(f"Market analysis unavailable: {analysis.error}")

            new_opportunities = self._synthesize_opportunities(snapshot)

            with self._lock:
                for opp in new_opportunities:
                    self._opportunities[opp.id] = opp

            for opp in new_opportunities:
                self._emit("opportunityFound", replace(opp))
                self._announce_opportunity(opp)

            self.cleanup_expired_opportunities()

            self.logger.info(f"Scan complete: {len(new_opportunities)} new opportunities")
            return [replace(opp) for opp in new_opportunities]
        except Exception as e:
            self.logger.error(f"Error scanning for opportunities: {e}", exc_info=True)
            return []
        finally:
            self._set_status(AgentStatus.ACTIVE if self._scanning else AgentStatus.IDLE)

    def generate_market_data(self) -> MarketSnapshot:
        """Synthesize prices, liquidity and volume for every asset on every protocol."""
        n_protocols = len(MARKET_PROTOCOLS)
        rows = []

        for asset, base_price in BASE_PRICES.items():
            jitter = self.rng.lognormal(mean=0.0, sigma=PRICE_JITTER_SIGMA, size=n_protocols)
            liquidity = self.rng.uniform(100_000, 10_100_000, size=n_protocols)
            volume = self.rng.uniform(50_000, 1_050_000, size=n_protocols)

            for i, protocol in enumerate(MARKET_PROTOCOLS):
                rows.append({
                    "asset": asset,
                    "protocol": protocol,
                    "price": float(base_price * jitter[i]),
                    "liquidity": float(liquidity[i]),
                    "volume_24h": float(volume[i]),
                })

        return MarketSnapshot(
            timestamp=self._clock(),
            prices=pd.DataFrame(rows),
            gas_price_gwei=float(self.rng.uniform(10, 60)),
            network_load=float(self.rng.uniform(0, 100)),
        )

    def _pick(self, options):
        return options[int(self.rng.integers(len(options)))]

    def _synthesize_opportunities(self, snapshot: MarketSnapshot) -> List[ArbitrageOpportunity]:
        now = self._clock()
        count = int(self.rng.integers(1, MAX_OPPORTUNITIES_PER_SCAN + 1))
        opportunities = []

        for _ in range(count):
            pair = self._pick(ASSET_PAIRS)
            base, quote = pair.split("/")
            protocol_a = self._pick(OPPORTUNITY_PROTOCOLS)
            protocol_b = self._pick([p for p in OPPORTUNITY_PROTOCOLS if p != protocol_a])

            price_a = snapshot.price(base, protocol_a) / snapshot.price(quote, protocol_a)
            spread = float(self.rng.uniform(MIN_SPREAD, MAX_SPREAD))
            expiry_minutes = float(self.rng.uniform(MIN_EXPIRY_MINUTES, MAX_EXPIRY_MINUTES))

            opportunities.append(ArbitrageOpportunity(
                id=f"arb-{uuid.uuid4().hex[:12]}",
                type=(
                    OpportunityType.DEX_ARBITRAGE
                    if self.rng.random() > 0.5
                    else OpportunityType.CROSS_CHAIN
                ),
                asset_pair=pair,
                protocol_a=protocol_a,
                protocol_b=protocol_b,
                price_a=price_a,
                price_b=price_a * (1 + spread),
                expected_return=spread * 100,
                required_capital=float(self.rng.uniform(1_000, 51_000)),
                gas_estimate=float(self.rng.uniform(50_000, 250_000)),
                risk=classify_risk(spread),
                liquidity=float(self.rng.uniform(100_000, 5_100_000)),
                time_decay=float(self.rng.uniform(MIN_TIME_DECAY_MINUTES, MAX_TIME_DECAY_MINUTES)),
                detected_at=now,
                expires_at=now + timedelta(minutes=expiry_minutes),
            ))

        return opportunities

    def _announce_opportunity(self, opportunity: ArbitrageOpportunity) -> None:
        context = (
            f"New arbitrage opportunity found: {opportunity.asset_pair} between "
            f"{opportunity.protocol_a} and {opportunity.protocol_b}, "
            f"expected return: {opportunity.expected_return:.2f}%, "
            f"risk: {opportunity.risk.value}"
        )
        content = self._generate_message_content(context, MessageType.ALERT)
        self.send_message(
            self.create_message(content, MessageType.ALERT, data=replace(opportunity))
        )

    def cleanup_expired_opportunities(self) -> List[ArbitrageOpportunity]:
        """
        Evict every stored opportunity whose expiry has passed.

        Returns:
            The evicted opportunities, marked expired
        """
        now = self._clock()
        with self._lock:
            expired = [opp for opp in self._opportunities.values() if opp.expires_at <= now]
            for opp in expired:
                opp.status = OpportunityStatus.EXPIRED
                del self._opportunities[opp.id]

        for opp in expired:
            self._emit("opportunityExpired", opp)

        if expired:
            self.logger.debug(f"Expired {len(expired)} opportunities")
        return expired

    def get_active_opportunities(self) -> List[ArbitrageOpportunity]:
        """Snapshot of stored opportunities that are active and not yet expired."""
        now = self._clock()
        with self._lock:
            return [replace(opp) for opp in self._opportunities.values() if opp.is_active(now)]

    def get_all_opportunities(self) -> List[ArbitrageOpportunity]:
        """Snapshot of every stored opportunity regardless of status."""
        with self._lock:
            return [replace(opp) for opp in self._opportunities.values()]

    def respond_to_message(self, message: AgentMessage) -> None:
        """Answer opportunity requests from the matching agent."""
        if message.agent_type is not AgentType.MATCHING or message.message_type is not MessageType.REQUEST:
            return

        self._touch()
        active = self.get_active_opportunities()
        context = f"Providing opportunity details: {len(active)} active opportunities available"
        content = self._generate_message_content(context, MessageType.RESPONSE)
        self.send_message(
            self.create_message(
                content,
                MessageType.RESPONSE,
                recipient_id=message.agent_id,
                data=active,
            )
        )
