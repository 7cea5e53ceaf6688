#!/usr/bin/env python3
"""
ruleloop - Main Entry Point

Runs the self-tuning rule loop, or inspects its state.

Usage:
    python main.py run --generator mypkg.generators:build [OPTIONS]
    python main.py ingest feedback.jsonl
    python main.py consolidate
    python main.py status
    python main.py history

Options:
    --config PATH       Path to .env config file (default: ../.env)
    --log-level LEVEL   Logging level: DEBUG|INFO|WARNING|ERROR (default: from config)
    --log-file PATH     Log file path (default: stdout only)
"""
import argparse
import importlib
import json
import signal
import sys
import time
from pathlib import Path

# Allow running from a checkout without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent))

from prometheus_client import start_http_server

from ruleloop.__version__ import VERSION, SERVICE_NAME
from ruleloop.config.loader import load_settings
from ruleloop.config.settings import Settings
from ruleloop.consolidation.weekly import WeeklyConsolidation
from ruleloop.feedback.models import FeedbackEvent
from ruleloop.feedback.storage import RedisStorage
from ruleloop.feedback.store import FeedbackStore
from ruleloop.knowledge.accumulator import KnowledgeAccumulator
from ruleloop.logging import configure_logging, get_logger
from ruleloop.rules.versions import RuleVersionStore
from ruleloop.service import ImprovementService
from ruleloop.utils.errors import ConfigError, RuleLoopError, ServiceError


# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_SIGNAL = 130  # 128 + SIGINT(2)

_shutdown_requested = False


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=f"{SERVICE_NAME} v{VERSION}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run --generator mypkg.generators:build
  python main.py --config /path/to/.env ingest feedback.jsonl
  python main.py --log-level DEBUG consolidate
        """
    )

    default_config = Path(__file__).resolve().parent.parent / ".env"

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Path to .env configuration file (default: {default_config} if present)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: LOG_LEVEL from config)"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path (default: LOG_FILE from config, else stdout only)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{SERVICE_NAME} v{VERSION}"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the rule loop until interrupted")
    run.add_argument(
        "--generator",
        required=True,
        help="Rule generator factory as module:callable; called with the Settings"
    )
    run.add_argument(
        "--initial-rules",
        type=str,
        default=None,
        help="JSON file with the root ruleset (used only when history is empty)"
    )
    run.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port"
    )

    ingest = sub.add_parser("ingest", help="Record feedback events from a JSON-lines file")
    ingest.add_argument("path", help="File with one feedback event object per line")

    sub.add_parser("consolidate", help="Run one consolidation and print the report")
    sub.add_parser("status", help="Show active version and feedback counts")

    history = sub.add_parser("history", help="List rule versions")
    history.add_argument("--limit", type=int, default=20)

    args = parser.parse_args(argv)
    if args.config is None and default_config.exists():
        args.config = str(default_config)
    return args


def setup_signal_handlers():
    """Setup SIGINT/SIGTERM handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        global _shutdown_requested

        if _shutdown_requested:
            print("\n[FORCE] Second signal received, forcing exit...")
            sys.exit(EXIT_SIGNAL)

        _shutdown_requested = True
        print(f"\n[SHUTDOWN] {signal.Signals(signum).name} received, shutting down gracefully...")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def load_generator(spec: str, settings: Settings):
    """
    Resolve ``module:callable`` and call it with the settings.

    Raises:
        ConfigError: If the spec is malformed or cannot be imported
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"--generator must be module:callable, got {spec!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load rule generator {spec!r}: {e}") from e
    return factory(settings)


def print_startup_banner(settings: Settings, logger):
    """Print startup banner. No secrets are displayed."""
    storage = settings.storage
    redis_target = "in-memory" if storage.disable_persistence else f"{storage.host}:{storage.port}/{storage.db}"
    banner = f"""
{'='*70}
{SERVICE_NAME} v{VERSION}
{'='*70}
Environment:       {settings.environment}
Storage:           {redis_target} (prefix={storage.key_prefix})
Trigger:           every {settings.trigger.count_threshold} events or {settings.trigger.timeout_ms} ms
FP threshold:      {settings.auto_revert.fp_rate_threshold * 100:.1f}% (min {settings.auto_revert.min_feedback_count} samples)
{'='*70}
"""
    print(banner)
    logger.info(
        "Service starting",
        extra={"version": VERSION, "environment": settings.environment}
    )


def cmd_run(args, settings: Settings, logger) -> int:
    generator = load_generator(args.generator, settings)

    initial_rules = "[]"
    if args.initial_rules:
        initial_rules = Path(args.initial_rules).read_text(encoding="utf-8")

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Metrics listening on :{args.metrics_port}/metrics")

    setup_signal_handlers()
    print_startup_banner(settings, logger)

    service = ImprovementService(settings, generator=generator, initial_rules=initial_rules)
    try:
        service.start()
        print(f"\n{SERVICE_NAME} is RUNNING")
        print("Press Ctrl+C to stop\n")

        while not _shutdown_requested:
            time.sleep(1)
    finally:
        service.stop()

    return EXIT_SUCCESS


def cmd_ingest(args, settings: Settings, logger) -> int:
    storage = RedisStorage(settings.storage)
    store = FeedbackStore(storage)

    recorded = duplicates = invalid = 0
    with open(args.path, encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = FeedbackEvent.from_dict(json.loads(line))
            except (json.JSONDecodeError, RuleLoopError, TypeError) as e:
                invalid += 1
                logger.warning(f"Skipping line {line_no}: {e}")
                continue
            if store.record(event):
                recorded += 1
            else:
                duplicates += 1

    print(f"recorded={recorded} duplicates={duplicates} invalid={invalid}")
    return EXIT_SUCCESS


def cmd_consolidate(args, settings: Settings, logger) -> int:
    storage = RedisStorage(settings.storage)
    store = FeedbackStore(storage)
    versions = RuleVersionStore(storage)

    # Knowledge is rebuilt from the feedback log
    accumulator = KnowledgeAccumulator(settings.knowledge)
    accumulator.ingest_many(store.replay())

    consolidation = WeeklyConsolidation(store, accumulator, settings.consolidation)
    result = consolidation.run(versions.active_version_id())
    print(result.report)
    print(f"recommended_action={result.recommended_action.value} reason={result.reason}")
    return EXIT_SUCCESS


def cmd_status(args, settings: Settings, logger) -> int:
    storage = RedisStorage(settings.storage)
    versions = RuleVersionStore(storage)
    store = FeedbackStore(storage)

    active = versions.active_version()
    if active is None:
        print("No active rule version")
        return EXIT_SUCCESS

    metrics = store.metrics(active.version_id)
    print(f"Active version:   {active.version_id} (created by {active.created_by.value})")
    print(f"Parent version:   {active.parent_version_id or '-'}")
    print(f"Feedback events:  {store.count(active.version_id)}")
    print(f"FP rate:          {metrics.fp_rate * 100:.1f}% over {metrics.sample_count} events")
    print(f"Storage healthy:  {storage.health_check()}")
    return EXIT_SUCCESS


def cmd_history(args, settings: Settings, logger) -> int:
    versions = RuleVersionStore(RedisStorage(settings.storage))
    active_id = versions.active_version_id()
    for version in versions.history()[-args.limit:]:
        marker = "*" if version.version_id == active_id else " "
        print(
            f"{marker} {version.version_id}  parent={version.parent_version_id or '-'}  "
            f"by={version.created_by.value}  at={version.created_at:.0f}"
        )
    return EXIT_SUCCESS


COMMANDS = {
    "run": cmd_run,
    "ingest": cmd_ingest,
    "consolidate": cmd_consolidate,
    "status": cmd_status,
    "history": cmd_history,
}


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0=success, 1=error, 2=config error, 130=signal)
    """
    args = parse_args(argv)

    configure_logging(level=args.log_level or "INFO", log_file=args.log_file)
    logger = get_logger("main")

    try:
        settings = load_settings(args.config)
        configure_logging(
            level=args.log_level or settings.log_level,
            json_format=settings.log_json,
            log_file=args.log_file or settings.log_file,
        )
        logger = get_logger("main")
        return COMMANDS[args.command](args, settings, logger)

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"\n[ERROR] Configuration error: {e}\n", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    except (ServiceError, RuleLoopError) as e:
        logger.error(f"Service error: {e}", exc_info=True)
        print(f"\n[ERROR] {e}\n", file=sys.stderr)
        return EXIT_ERROR

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_SIGNAL


if __name__ == "__main__":
    sys.exit(main())
