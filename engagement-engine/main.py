#!/usr/bin/env python3
"""
Engagement Engine - Main Runner

Local runner for trying the engagement pipeline without the web backend.

Usage:
    python main.py demo                       # Replay the reference session
    python main.py replay samples.json        # Feed a recorded batch
    python main.py demo --cooldown 0          # Tune the policy from the CLI
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from engagement_engine import Caller, EngagementPipeline, MicroBreakPolicy


DEMO_SCORES = [0.9, 0.35, 0.3, 0.32, 0.8, 0.85, 0.2, 0.15]


def print_header(text: str):
    """Print a formatted header."""
    print("\n" + "=" * 60)
    print(f"  {text}")
    print("=" * 60)


def print_section(text: str):
    """Print a formatted section header."""
    print(f"\n--- {text} ---")


def build_pipeline(args: argparse.Namespace) -> EngagementPipeline:
    policy = MicroBreakPolicy.from_settings(
        low_threshold=args.low_threshold,
        consecutive_low_limit=args.consecutive_low,
        cooldown_seconds=args.cooldown,
        ema_alpha=args.alpha,
    )
    return EngagementPipeline(policy=policy)


async def run_session(pipeline: EngagementPipeline, raw_samples: List[Dict[str, Any]]):
    caller = Caller(user_id="demo-learner")

    print_section("Starting session")
    session = await pipeline.start_session(caller, "demo-lesson", {"platform": "cli"})
    print(f"Session {session.id} opened at {session.started_at.isoformat()}")

    for raw in raw_samples:
        raw.setdefault("sessionId", session.id)

    print_section("Ingesting telemetry")
    result = await pipeline.ingest(caller, session.id, raw_samples)
    state = await pipeline.engagement_state(caller, session.id)
    for raw, decision in zip(raw_samples, result.decisions):
        flag = "BREAK" if decision.should_break else "-"
        reason = decision.reason.value if decision.reason else ""
        print(f"  attention={raw.get('attentionScore', '?'):<6} {flag:<6} {reason}")
    for error in result.errors:
        print(f"  sample {error.index}: {error.error} ({error.message})")
    if state:
        print(f"Smoothed attention: {state.ema_attention:.3f} | phase: {state.phase.value}")

    print_section("Progress pings")
    for position in (30, 20, 290):
        record = await pipeline.ping_progress(caller, "demo-lesson", position, 300, False)
        print(f"  ping {position:>3}s -> stored {record.position_sec}s, completed={record.completed}")

    print_section("Ending session")
    ended = await pipeline.end_session(caller, session.id)
    print(json.dumps(ended.to_dict(), indent=2))


def run_demo(args: argparse.Namespace):
    print_header("Engagement Engine Demo - Micro-Break Detection")
    print(json.dumps(MicroBreakPolicy().to_dict(), indent=2))
    raw_samples = [
        {"ts": 1714554000 + i * 3, "emotionLabel": "neutral", "emotionConfidence": 0.8, "attentionScore": s}
        for i, s in enumerate(DEMO_SCORES)
    ]
    asyncio.run(run_session(build_pipeline(args), raw_samples))


def run_replay(args: argparse.Namespace):
    print_header(f"Replaying {args.file}")
    with open(Path(args.file), "r") as f:
        payload = json.load(f)
    raw_samples = payload.get("samples", []) if isinstance(payload, dict) else payload
    asyncio.run(run_session(build_pipeline(args), raw_samples))


def main():
    parser = argparse.ArgumentParser(description="Engagement engine runner")
    parser.add_argument("mode", choices=["demo", "replay"], help="What to run")
    parser.add_argument("file", nargs="?", help="JSON file of samples (replay mode)")
    parser.add_argument("--low-threshold", type=float, default=0.4)
    parser.add_argument("--consecutive-low", type=int, default=3)
    parser.add_argument("--cooldown", type=float, default=300, help="Cooldown in seconds")
    parser.add_argument("--alpha", type=float, default=0.3)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.mode == "replay":
        if not args.file:
            parser.error("replay mode needs a file")
        run_replay(args)
    else:
        run_demo(args)


if __name__ == "__main__":
    main()
