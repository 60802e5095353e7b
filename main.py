"""Command-line entry point for the critic loop.

Runs one generate-review-repair loop for a problem file and prints the
verified program on success.

Usage:
    python main.py problems/fizzbuzz.txt --critics 5 --max-iterations 8

Exit codes:
    0    Converged
    1    Iteration budget exhausted
    2    Fatal transport error, or an unreadable problem file
    130  Interrupted (SIGINT / SIGTERM)

With ``--report-iterations`` a converged run instead exits with the number
of proposals it took (iterations + 1) and every failure exits with 0, so a
shell script can average iteration counts over repeated runs.
"""

import argparse
import asyncio
import contextlib
import signal
import sys

import structlog

from agents.loop_graph import create_critic_loop_graph
from config import configure_logging, settings
from events import AgentEvent, EventBus, EventType, get_event_bus
from models.schemas import LoopOutcome, OutcomeKind, PanelMode
from problems import load_problem

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)

EXIT_CODES: dict[OutcomeKind, int] = {
    OutcomeKind.CONVERGED: 0,
    OutcomeKind.EXHAUSTED_BUDGET: 1,
    OutcomeKind.FATAL_TRANSPORT_ERROR: 2,
}
EXIT_BAD_INPUT = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Draft, review, repair and test a program until it passes its own tests.",
    )
    parser.add_argument("problem_file", help="Text file with the problem; '#' lines are ignored")
    parser.add_argument(
        "--critics",
        type=int,
        default=None,
        help=f"Number of critics on the review panel (default: {settings.num_critics})",
    )
    parser.add_argument(
        "--general-critic",
        action="store_true",
        help="Give every critic the single general review style",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help=f"Iteration budget (default: {settings.max_iterations})",
    )
    parser.add_argument(
        "--report-iterations",
        action="store_true",
        help="Exit with the number of proposals needed, or 0 on failure",
    )
    return parser


def exit_code_for(outcome: LoopOutcome, report_iterations: bool = False) -> int:
    """Map a run outcome to the process exit status."""
    if report_iterations:
        return outcome.iterations + 1 if outcome.converged else 0
    return EXIT_CODES[outcome.kind]


async def follow_events(queue: asyncio.Queue[AgentEvent]) -> None:
    """Log run progress until the run is closed."""
    while True:
        event = await queue.get()
        if event.type == EventType.RUN_CLOSED:
            return
        if event.type == EventType.CRITIC_VERDICT:
            logger.info("critic_reported", critic=event.agent_id, **event.data)
        elif event.type == EventType.TEST_RESULT:
            logger.info("tests_ran", **event.data)
        elif event.type == EventType.GRAPH_NODE_ACTIVE:
            logger.debug("node_active", node=event.data.get("node_id"))
        elif event.type == EventType.STREAM_PROGRESS:
            logger.debug("streaming", agent_id=event.agent_id, **event.data)


async def run_cli(args: argparse.Namespace, event_bus: EventBus | None = None) -> int:
    """Run one loop for the parsed arguments and return the exit status."""
    try:
        problem = load_problem(args.problem_file)
    except (OSError, ValueError) as e:
        logger.error("problem_load_failed", path=args.problem_file, error=str(e))
        return 0 if args.report_iterations else EXIT_BAD_INPUT

    event_bus = event_bus or get_event_bus()
    graph = create_critic_loop_graph(
        event_bus,
        num_critics=args.critics,
        panel_mode=PanelMode.GENERAL if args.general_critic else None,
        max_iterations=args.max_iterations,
    )

    # Cancel the whole run (and every in-flight model call) on shutdown signals
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    if task is not None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, task.cancel)
                installed.append(sig)

    follower = asyncio.create_task(follow_events(event_bus.subscribe(graph.run_id)))
    try:
        outcome = await graph.run(problem)
    finally:
        await event_bus.close_run(graph.run_id)
        await follower
        for sig in installed:
            loop.remove_signal_handler(sig)

    if outcome.converged and outcome.artifact is not None:
        print(outcome.artifact.code)
    else:
        logger.warning(
            "run_failed",
            outcome=outcome.kind.value,
            iterations=outcome.iterations,
            error=outcome.error,
        )
    return exit_code_for(outcome, args.report_iterations)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.critics is not None and args.critics < 1:
        logger.error("invalid_panel_size", critics=args.critics)
        return EXIT_BAD_INPUT
    if args.max_iterations is not None and args.max_iterations < 0:
        logger.error("invalid_iteration_budget", max_iterations=args.max_iterations)
        return EXIT_BAD_INPUT

    try:
        return asyncio.run(run_cli(args))
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.warning("run_interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
