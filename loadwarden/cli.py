"""Command line entry point for LoadWarden rule inspection and suggestions."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Sequence

from .collectors import SampleReader
from .config import LoadWardenConfig, SampleSource
from .config_loader import load_config
from .errors import LoadWardenError, UnknownScopeError
from .metrics import PerformanceReport, SampleAggregator
from .rules import DependencyGraph, LoadPlanner, RequestContext, StateResolver
from .store import JsonFileRuleStore, load_snapshot
from .suggestions import SuggestionEngine

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LoadWarden helper CLI")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (defaults to the configured level)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser(
        "resolve",
        help="Show the effective state of one plugin for a request",
    )
    _add_config_argument(resolve)
    resolve.add_argument("--plugin", required=True, help="Plugin id, e.g. akismet/akismet.php")
    _add_request_arguments(resolve)

    plan = sub.add_parser(
        "plan",
        help="Show which plugins load, defer or stay off for a request",
    )
    _add_config_argument(plan)
    plan.add_argument(
        "--plugin",
        action="append",
        default=None,
        help="Plugin id to plan for (repeatable; defaults to every configured plugin)",
    )
    _add_request_arguments(plan)

    performance = sub.add_parser(
        "performance",
        help="Aggregate the sample feed per request kind and trigger",
    )
    _add_config_argument(performance)
    _add_sample_arguments(performance)

    suggest = sub.add_parser(
        "suggest",
        help="Rank rule proposals from the sample feed",
    )
    _add_config_argument(suggest)
    _add_sample_arguments(suggest)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "resolve": _command_resolve,
        "plan": _command_plan,
        "performance": _command_performance,
        "suggest": _command_suggest,
    }
    command = commands.get(args.command)
    if command is None:
        parser.error("unknown command")
        return 1

    try:
        config = load_config(args.config)
        _configure_logging(args.log_level or config.logging.level)
        return command(args, config)
    except LoadWardenError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except FileNotFoundError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _command_resolve(args: argparse.Namespace, config: LoadWardenConfig) -> int:
    resolver = _resolver(config)
    request = _request_from_args(args)
    effective = resolver.resolve(args.plugin, request)
    output = {"plugin": args.plugin, "request": request.describe(), **effective.to_dict()}
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


def _command_plan(args: argparse.Namespace, config: LoadWardenConfig) -> int:
    plugins: List[str] = args.plugin or [plugin.id for plugin in config.plugins]
    planner = LoadPlanner(_resolver(config), DependencyGraph(config.plugins))
    request = _request_from_args(args)
    plan = planner.plan(plugins, request)
    print(json.dumps({"request": request.describe(), **plan.to_dict()}, indent=2, ensure_ascii=False))
    return 0


def _command_performance(args: argparse.Namespace, config: LoadWardenConfig) -> int:
    report = _performance_report(args, config)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _command_suggest(args: argparse.Namespace, config: LoadWardenConfig) -> int:
    report = _performance_report(args, config)
    engine = SuggestionEngine(config.suggestions, config.plugins, config.screens)
    print(json.dumps(engine.suggest(report).to_dict(), indent=2, ensure_ascii=False))
    return 0


# ----------------------------------------------------------------------
def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the YAML configuration file",
    )


def _add_request_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--screen", default=None, help="Admin screen id")
    parser.add_argument("--kind", default=None, help="Request kind (ajax, rest, cron, cli)")
    parser.add_argument("--context", default=None, help="Public page context id")
    parser.add_argument("--override", default=None, help="Page override as TYPE:ID, e.g. post:12")
    parser.add_argument("--trigger", default=None, help="AJAX action or REST namespace")


def _add_sample_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--samples",
        type=Path,
        default=None,
        help="Sample feed to read (defaults to samples.path from the config)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Only read the last N lines of the feed",
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolver(config: LoadWardenConfig) -> StateResolver:
    snapshot = load_snapshot(JsonFileRuleStore(config.state_dir))
    return StateResolver(snapshot, config.plugins, config.screens)


def _request_from_args(args: argparse.Namespace) -> RequestContext:
    override = None
    if args.override:
        override_type, sep, override_id = args.override.partition(":")
        if not sep or not override_id.isdigit():
            raise UnknownScopeError(f"invalid override: {args.override!r} (expected TYPE:ID)")
        override = (override_type, int(override_id))
    return RequestContext(
        screen_id=args.screen,
        request_kind=args.kind,
        context_id=args.context,
        override=override,
        trigger=args.trigger,
    )


def _performance_report(args: argparse.Namespace, config: LoadWardenConfig) -> PerformanceReport:
    path = args.samples if args.samples is not None else config.samples.path
    reader = SampleReader(SampleSource(path=path, follow=False))
    aggregator = SampleAggregator(config.aggregation)
    recorded = aggregator.record_many(reader.snapshot(limit=args.limit))
    logger.info("aggregated %d sample(s)", recorded)
    return aggregator.report()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
