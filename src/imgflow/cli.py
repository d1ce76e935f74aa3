"""CLI entry point for imgflow."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yaml

from imgflow.config import build_scheduler, load_settings
from imgflow.core.branches import plan_branches
from imgflow.core.compiler import compile_workflow
from imgflow.core.errors import ErrorCategory, FlowError, GraphValidationError, error_category, is_retryable
from imgflow.core.events import EventChannel
from imgflow.core.model import WorkflowGraph
from imgflow.core.steps import Pipeline
from imgflow.recipes.loader import load_graph, load_inputs, load_workflow
from imgflow.recipes.variants import DEFAULT_COUNT, DEFAULT_DESTINATION, variants_recipe

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgflow",
        description="Compile and run image/text/vision workflow graphs",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command")

    comp = sub.add_parser("compile", help="Compile an editor graph into a pipeline")
    comp.add_argument("graph", help="Graph file (JSON or YAML)")
    comp.add_argument("-o", "--output", default=None, help="Write the pipeline here instead of stdout")
    comp.add_argument("--format", choices=("yaml", "json"), default="yaml", help="Output format")
    comp.add_argument("--name", default=None, help="Pipeline name")

    run = sub.add_parser("run", help="Run a graph or a compiled pipeline")
    run.add_argument("file", help="Graph or pipeline file (JSON or YAML)")
    run.add_argument("--input", action="append", default=[], metavar="VAR=PATH", help="Input image for VAR")
    run.add_argument("--config", default=None, help="Settings file (YAML)")
    run.add_argument("--dry-run", action="store_true", help="Print the plan without executing")
    run.add_argument("--events", action="store_true", help="Print progress events as JSON lines")

    var = sub.add_parser("variants", help="Print the variants recipe graph")
    var.add_argument("--prompt", required=True, help="What to generate")
    var.add_argument("--count", type=int, default=DEFAULT_COUNT, help="Number of candidates")
    var.add_argument("--generator", default="default", help="Generator name")
    var.add_argument("--judge", default="claude", help="Vision provider that picks the winner")
    var.add_argument("--criteria", default=None, help="Judging criteria")
    var.add_argument("--refine-op", default=None, help="Transform applied to the winner")
    var.add_argument("--destination", default=DEFAULT_DESTINATION, help="Where to save the winner")
    var.add_argument("--format", choices=("yaml", "json"), default="json", help="Output format")
    var.add_argument("-o", "--output", default=None, help="Write the graph here instead of stdout")

    return parser


def _dump(data: dict, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    return yaml.safe_dump(data, sort_keys=False)


def _write(text: str, output: str | None) -> None:
    if output:
        Path(output).write_text(text)
        print(f"Wrote {output}", file=sys.stderr)
    else:
        sys.stdout.write(text)


def _print_plan(pipeline: Pipeline, out) -> None:
    regions = plan_branches(pipeline)
    print(f"Pipeline: {pipeline.name}", file=out)
    print(f"Steps: {len(pipeline)}", file=out)
    for i, step in enumerate(pipeline.steps):
        print(f"  {i}: {step.kind} {step.step_id}", file=out)
    for region in regions:
        print(f"  fan-out {region.fan_out_id}: {len(region)} branches", file=out)


def _compile(graph: WorkflowGraph, name: str | None = None, max_fan_out: int | None = None) -> Pipeline:
    problems = graph.validate_structure()
    if problems:
        for problem in problems:
            print(f"error: {problem}", file=sys.stderr)
        raise GraphValidationError(f"Graph is invalid ({len(problems)} problems)")
    kwargs = {}
    if name:
        kwargs["name"] = name
    if max_fan_out:
        kwargs["max_fan_out"] = max_fan_out
    return compile_workflow(graph, **kwargs).pipeline


def _cmd_compile(args: argparse.Namespace) -> int:
    pipeline = _compile(load_graph(args.graph), name=args.name)
    _write(_dump(pipeline.to_wire(), args.format), args.output)
    return EXIT_OK


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    workflow = load_workflow(args.file)
    if isinstance(workflow, WorkflowGraph):
        pipeline = _compile(workflow, max_fan_out=settings.max_fan_out)
    else:
        pipeline = workflow
    inputs = load_inputs(args.input)

    # With --events, stdout carries only JSON lines.
    out = sys.stderr if args.events else sys.stdout
    _print_plan(pipeline, out)

    scheduler = build_scheduler(settings)
    scheduler.dry_run = args.dry_run

    channel = EventChannel()
    if args.events:
        channel.subscribe(lambda event: print(json.dumps(event.to_wire()), flush=True))

    print(file=out)
    try:
        result = await scheduler.run(pipeline, initial_variables=inputs, channel=channel)
    finally:
        await scheduler.registry.aclose()

    if args.dry_run:
        print("\nDry run: no steps executed.", file=out)
        return EXIT_OK

    print(f"\nDone in {result.duration_ms:.0f}ms", file=out)
    summary = result.summary()
    for status, count in summary["by_status"].items():
        print(f"  {status}: {count}", file=out)
    for saved in result.saved:
        print(f"  saved: {saved.location}", file=out)

    if not result.success:
        print(f"\nFailed steps: {result.failed_steps}", file=out)
        if result.error is not None:
            print(f"Error [{result.error.code}]: {result.error.message}", file=out)
            if is_retryable(result.error):
                print("The failure is transient; running again may succeed.", file=out)
        return EXIT_FAILED

    return EXIT_OK


def _cmd_variants(args: argparse.Namespace) -> int:
    graph = variants_recipe(
        args.prompt,
        count=args.count,
        generator=args.generator,
        judge=args.judge,
        criteria=args.criteria,
        refine_op=args.refine_op,
        destination=args.destination,
    )
    _write(_dump(graph.to_wire(), args.format), args.output)
    return EXIT_OK


def _dispatch(args: argparse.Namespace) -> int:
    try:
        if args.command == "compile":
            return _cmd_compile(args)
        if args.command == "run":
            return asyncio.run(_run(args))
        if args.command == "variants":
            return _cmd_variants(args)
    except FlowError as e:
        print(f"error [{e.code}]: {e.message}", file=sys.stderr)
        if error_category(e) in (ErrorCategory.VALIDATION, ErrorCategory.USER_INPUT):
            return EXIT_INVALID
        return EXIT_FAILED
    return EXIT_FAILED


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_FAILED)

    sys.exit(_dispatch(args))
