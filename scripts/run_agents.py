#!/usr/bin/env python3
"""
Script to run the multi-agent arbitrage advisor demo.
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import time

from config.settings import setup_logging, Settings
from src.agents.orchestrator import AgentOrchestrator

logger = setup_logging()


def main():
    """Run the agents, feed them one user's preferences and report the results."""
    parser = argparse.ArgumentParser(description="Run the multi-agent arbitrage advisor")
    parser.add_argument(
        "--preferences",
        default="Conservative approach with $5,000 for stablecoin arbitrage, 3-7% returns are fine",
        help="Free-text investment preferences",
    )
    parser.add_argument("--user", default="demo-user", help="User id for the preferences")
    parser.add_argument("--duration", type=int, default=40, help="Seconds to let scans run")
    parser.add_argument("--topic", help="Run a scripted agent conversation about this topic first")
    parser.add_argument("--quiet", action="store_true", help="Disable debug mirroring of system logs")
    parser.add_argument("--no-llm", action="store_true", help="Use deterministic fallbacks only")

    args = parser.parse_args()

    config = Settings.load_config()
    if args.no_llm:
        config["use_llm"] = False

    orchestrator = AgentOrchestrator(config)
    if args.quiet:
        orchestrator.set_debug_mode(False)

    logger.info("=" * 60)
    logger.info("Starting Arbitrage Agents")
    logger.info(f"User: {args.user}")
    logger.info(f"Preferences: {args.preferences}")
    logger.info(f"Duration: {args.duration} seconds")
    logger.info("=" * 60)

    try:
        orchestrator.start()

        if args.topic:
            orchestrator.simulate_agent_conversation(args.topic)

        schema = orchestrator.process_user_input(args.preferences, args.user)
        prefs = schema.preferences
        logger.info(
            f"Schema {schema.id}: risk={prefs.risk_tolerance.value}, "
            f"max=${prefs.max_investment:,.2f}, assets={', '.join(prefs.preferred_assets)}, "
            f"min_return={prefs.min_return_rate}%"
        )

        time.sleep(args.duration)

        status = orchestrator.get_system_status()
        logger.info("System status:")
        for key, agent in status["agents"].items():
            logger.info(f"  {key}: {agent['name']} ({agent['status']})")
        for key, value in status["metrics"].items():
            logger.info(f"  {key}: {value}")

        logger.info("Active opportunities:")
        for opp in orchestrator.get_all_opportunities_with_details():
            logger.info(
                f"  {opp['asset_pair']:<10} {opp['protocol_a']} -> {opp['protocol_b']} "
                f"return={opp['expected_return']:.2f}% risk={opp['risk']} "
                f"expires_in={opp['minutes_remaining']:.1f}min"
            )

        recommendations = orchestrator.get_user_recommendations(args.user)
        logger.info(f"Recommendations for {args.user}: {len(recommendations)}")
        for rec in recommendations:
            logger.info(f"  ${rec.allocated_amount:,.2f} (confidence {rec.confidence:.2f}) {rec.reasoning}")

    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        orchestrator.shutdown()


if __name__ == "__main__":
    main()
