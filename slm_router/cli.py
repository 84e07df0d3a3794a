"""
Command line interface.

    slm-router route "Track vehicle MH12AB1234"
    slm-router learn "Mumbai se Delhi truck chahiye" incorrect --tool freight_trucks
    slm-router recall "truck Mumbai"
    slm-router health
    slm-router benchmark

Results are printed as JSON on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .errors import RouterError
from .router import SLMRouter, create_router


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="slm-router", description="SLM-first tool router")
    parser.add_argument("--config", type=Path, help="Path to JSON config (default: environment)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    route = sub.add_parser("route", help="Route a query to a tool")
    route.add_argument("query")
    route.add_argument("--user-id")
    route.add_argument("--skip-memory", action="store_true")
    route.add_argument("--dispatch", action="store_true", help="Also invoke the selected tool")

    learn = sub.add_parser("learn", help="Record feedback for a routed query")
    learn.add_argument("query")
    learn.add_argument("feedback", choices=["correct", "incorrect"])
    learn.add_argument("--tool", dest="corrected_tool", help="Correct tool when incorrect")
    learn.add_argument("--params", dest="corrected_args", help="Correct parameters as JSON")

    recall = sub.add_parser("recall", help="Search memory for past routings")
    recall.add_argument("query")
    recall.add_argument("--user-id")

    sub.add_parser("health", help="Check service health")
    sub.add_parser("benchmark", help="Run the routing benchmark")
    sub.add_parser("stats", help="Print router statistics")

    return parser


async def run(args: argparse.Namespace, router: SLMRouter) -> dict[str, Any]:
    """Execute one CLI command and return its JSON payload."""
    if args.command == "route":
        if args.dispatch:
            result = await router.dispatch(
                args.query, user_id=args.user_id, skip_memory=args.skip_memory
            )
            return {"success": True, "data": result.to_dict()}
        decision = await router.route(
            args.query, user_id=args.user_id, skip_memory=args.skip_memory
        )
        return {"success": True, "data": decision.to_dict()}

    if args.command == "learn":
        result = await router.learn(
            args.query,
            args.feedback,
            corrected_tool=args.corrected_tool,
            corrected_args=args.corrected_args,
        )
        if not result.ok:
            return {"success": False, "error": result.error}
        return {
            "success": True,
            "data": {"query": args.query, "feedback": args.feedback, "correct_tool": args.corrected_tool},
        }

    if args.command == "recall":
        records = await router.recall(args.query, user_id=args.user_id)
        if not records.ok:
            return {"success": False, "error": records.error}
        values = records.value or []
        return {
            "success": True,
            "data": {"count": len(values), "results": [r.to_dict() for r in values]},
        }

    if args.command == "health":
        return {"success": True, "data": await router.healthcheck()}

    if args.command == "benchmark":
        report = await router.benchmark()
        return {"success": True, "data": report.to_dict()}

    return {"success": True, "data": router.statistics()}


async def _main(args: argparse.Namespace) -> int:
    async with create_router(args.config) as router:
        try:
            payload = await run(args, router)
        except RouterError as e:
            payload = {"success": False, "error": str(e)}
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0 if payload.get("success") else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
