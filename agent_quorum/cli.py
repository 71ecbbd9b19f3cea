"""Command-line interface for running collaborations against template analysts."""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Sequence

from .agents.analysts import register_template_analysts
from .agents.base import ProducerRegistry
from .memory.persistence import JsonFilePersistence
from .models.core import AgentType, AnalysisDepth, AnalysisType, ExecutionMode, Task
from .models.errors import AgentQuorumError
from .orchestration.orchestrator import AgentOrchestrator
from .utils.config import get_config
from .utils.logging import configure_logging


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Arguments without the program name, sys.argv when omitted

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="agent-quorum",
        description="Multi-agent equities research orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Debate a topic with one analyst of every type
  agent-quorum collaborate "AAPL outlook" --mode structured_debate --rounds 3

  # Quick technical analysis of several tickers
  agent-quorum analyze AAPL MSFT --type technical --depth quick
        """
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--storage", metavar="PATH", help="Store agents, tasks and results under PATH")
    parser.add_argument("--agents-per-type", type=int, default=1, metavar="N",
                        help="Template analysts to register per agent type (default: 1)")
    parser.add_argument("--signal", type=float, default=0.0,
                        help="Market signal in [-1, 1] passed to every analyst")

    subparsers = parser.add_subparsers(dest="command", required=True)

    collaborate = subparsers.add_parser("collaborate", help="Run one collaboration session")
    collaborate.add_argument("topic")
    collaborate.add_argument("--mode", choices=[m.value for m in ExecutionMode if m != ExecutionMode.SINGLE_AGENT],
                             default=ExecutionMode.PARALLEL.value)
    collaborate.add_argument("--rounds", type=int, default=None)
    collaborate.add_argument("--threshold", type=float, default=None,
                             help="Target consensus for consensus_building")
    collaborate.add_argument("--types", nargs="+", choices=[t.value for t in AgentType], default=None,
                             help="Agent types taking part (default: all)")

    analyze = subparsers.add_parser("analyze", help="Analyze one or more subjects")
    analyze.add_argument("topics", nargs="+")
    analyze.add_argument("--type", dest="analysis_type", choices=[t.value for t in AnalysisType],
                         default=AnalysisType.COMPREHENSIVE.value)
    analyze.add_argument("--depth", choices=[d.value for d in AnalysisDepth],
                         default=AnalysisDepth.STANDARD.value)

    return parser.parse_args(argv)


async def build_orchestrator(args: argparse.Namespace) -> AgentOrchestrator:
    config = get_config()
    persistence = JsonFilePersistence(args.storage) if args.storage else None
    producers = register_template_analysts(ProducerRegistry())
    orchestrator = AgentOrchestrator(config=config, producers=producers, persistence=persistence)
    await orchestrator.initialize()

    for agent_type in AgentType:
        existing = orchestrator.registry.list_agents(agent_type)
        for index in range(len(existing), args.agents_per_type):
            await orchestrator.registry.register(
                f"{agent_type.value.capitalize()} Analyst {index + 1}",
                agent_type,
                agent_id=f"{agent_type.value}-{index + 1}",
            )
    return orchestrator


def task_summary(task: Task) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "task_id": task.task_id,
        "topic": task.topic,
        "status": task.status.value,
        "participants": task.participants,
        "partial_failures": [f.model_dump(mode="json") for f in task.partial_failures],
    }
    if task.result is not None:
        summary["result"] = task.result.model_dump(mode="json")
    if task.failure_reason:
        summary["failure_reason"] = task.failure_reason
        summary["can_retry"] = task.can_retry
    return summary


async def run_command(args: argparse.Namespace) -> int:
    orchestrator = await build_orchestrator(args)
    context = {"signal": args.signal}
    try:
        if args.command == "collaborate":
            agent_types: Optional[List[AgentType]] = (
                [AgentType(t) for t in args.types] if args.types else None
            )
            task = await orchestrator.collaborate(
                args.topic,
                ExecutionMode(args.mode),
                agent_types=agent_types,
                owner_id="cli",
                rounds=args.rounds,
                consensus_threshold=args.threshold,
                context=context,
            )
            print(json.dumps(task_summary(task), indent=2))
            return 0 if task.result is not None else 1

        results = await orchestrator.batch_analyze(
            args.topics,
            AnalysisType(args.analysis_type),
            AnalysisDepth(args.depth),
            owner_id="cli",
            context=context,
        )
        print(json.dumps({topic: r.model_dump(mode="json") for topic, r in results.items()}, indent=2))
        return 0
    except AgentQuorumError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    finally:
        await orchestrator.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    configure_logging("DEBUG" if args.verbose else get_config().log_level, json_format=args.json_logs)
    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
