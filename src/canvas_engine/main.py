"""
Canvas Engine - Command-line entry point.

Usage:
    canvas-engine models [--family video]
    canvas-engine info board.json
    canvas-engine validate board.json
    canvas-engine run board.json [--kind imageGenerator] [--concurrency 4]
    canvas-engine resume board.json
    canvas-engine upload photo.png [--direct]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections import Counter
from pathlib import Path

from canvas_engine.core.jobs import JobManager, JobState
from canvas_engine.core.node_types import NodeKind
from canvas_engine.core.store import CanvasStore
from canvas_engine.core.workspace import load_into, save_canvas
from canvas_engine.providers.assets import AssetClient
from canvas_engine.providers.base import GenerationError, ModelFamily, ProviderError
from canvas_engine.providers.client import GenerationClient
from canvas_engine.providers.registry import get_registry


logger = logging.getLogger("canvas_engine")


def _load_store(path: Path) -> CanvasStore:
    store = CanvasStore()
    load_into(store, path)
    return store


def cmd_models(args: argparse.Namespace) -> int:
    registry = get_registry()
    families = [ModelFamily(args.family)] if args.family else list(ModelFamily)
    for family in families:
        print(f"{family.value}:")
        for caps in registry.list_models(family):
            print(f"  {caps.id}: {caps.label} [{caps.input_type.value}]")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    store = _load_store(args.path)
    kinds = Counter(node.kind.value for node in store.nodes)
    print(f"{args.path}: {len(store)} nodes, {len(store.edges)} edges")
    for kind, count in sorted(kinds.items()):
        print(f"  {kind}: {count}")

    jobs = JobManager(store)
    states = Counter(
        jobs.job_state(node.id).name.lower()
        for node in store.nodes
        if node.kind.is_generator
    )
    if states:
        print("Generators: " + ", ".join(f"{n} {s}" for s, n in sorted(states.items())))
    pending = [node.id for node in store.nodes if node.kind.is_generator and node.data.has_pending_task]
    if pending:
        print(f"Pending remote jobs: {len(pending)}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Report generators that could not start with their current inputs."""
    store = _load_store(args.path)
    jobs = JobManager(store)
    problems = 0
    for node in store.nodes:
        if not node.kind.is_generator:
            continue
        try:
            jobs.build_request(node.id)
        except GenerationError as e:
            problems += 1
            print(f"{node.id} ({node.kind.value}): {e}")
    if not problems:
        print("All generators are ready")
    return 1 if problems else 0


async def _run(args: argparse.Namespace, resume: bool) -> int:
    store = _load_store(args.path)
    jobs = JobManager(store, GenerationClient(), poll_timeout=args.timeout)
    try:
        if resume:
            resumed = jobs.resume_pending()
            print(f"Resumed {len(resumed)} remote jobs")
            await jobs.wait()
        else:
            kinds = [NodeKind(k) for k in args.kind] if args.kind else None
            await jobs.run_all(kinds, max_concurrency=args.concurrency, wait=True)
    finally:
        await jobs.shutdown()

    states = {node.id: jobs.job_state(node.id) for node in store.nodes if node.kind.is_generator}
    failed = [nid for nid, state in states.items() if state is JobState.FAILED]
    for node_id in failed:
        print(f"{node_id}: {store.get_node(node_id).data.error}")

    save_canvas(store, args.path, name=args.path.stem)
    print(f"Saved {args.path}")
    return 1 if failed else 0


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args, resume=False))


def cmd_resume(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args, resume=True))


def cmd_upload(args: argparse.Namespace) -> int:
    asset = asyncio.run(AssetClient().upload_file(args.path, direct=args.direct))
    print(asset.url)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canvas-engine", description="Node canvas graph engine")
    parser.add_argument("--config", type=Path, help="Provider config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    models = sub.add_parser("models", help="List known models")
    models.add_argument("--family", choices=[f.value for f in ModelFamily])
    models.set_defaults(func=cmd_models)

    info = sub.add_parser("info", help="Summarize a saved canvas")
    info.add_argument("path", type=Path)
    info.set_defaults(func=cmd_info)

    validate = sub.add_parser("validate", help="Check every generator has its inputs")
    validate.add_argument("path", type=Path)
    validate.set_defaults(func=cmd_validate)

    for name, func, help_text in (
        ("run", cmd_run, "Run every eligible generator and save the results"),
        ("resume", cmd_resume, "Resume polling for pending remote jobs"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("path", type=Path)
        cmd.add_argument("--timeout", type=float, help="Give up on remote jobs after N seconds")
        if name == "run":
            cmd.add_argument(
                "--kind", action="append",
                choices=[k.value for k in NodeKind if k.is_generator],
                help="Only run these generator types",
            )
            cmd.add_argument("--concurrency", type=int, help="Max jobs in flight")
        cmd.set_defaults(func=func)

    upload = sub.add_parser("upload", help="Upload a media file")
    upload.add_argument("path", type=Path)
    upload.add_argument("--direct", action="store_true", help="Upload straight to cloud storage")
    upload.set_defaults(func=cmd_upload)

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the canvas engine CLI.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    get_registry().load_config(args.config)

    try:
        return args.func(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except ProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
