"""CLI entry point for qa-gen."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from qa_gen.config import AppConfig, load_config

logger = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> AppConfig:
    return load_config(Path(args.config) if args.config else None)


def _build_orchestrator(config: AppConfig):
    """Wire stores, index, retriever and backend for a CLI run."""
    from qa_gen.generation.orchestrator import GenerationOrchestrator
    from qa_gen.indexing.indexer import EvidenceIndex
    from qa_gen.jobs.store import JobStore
    from qa_gen.llm.backend import create_backend
    from qa_gen.records.store import RecordStore
    from qa_gen.retrieval.retriever import EvidenceRetriever

    index = EvidenceIndex.from_config(config.vector)
    jobs = JobStore(
        db_path=config.store.db_path,
        job_ttl_seconds=config.store.job_ttl_seconds,
        plan_ttl_seconds=config.store.plan_ttl_seconds,
    )
    records = RecordStore(db_path=config.store.db_path)
    retriever = EvidenceRetriever(
        index,
        min_score=config.retrieval.min_score,
        min_score_source_code=config.retrieval.min_score_source_code,
    )
    backend = create_backend(config.provider)
    return GenerationOrchestrator(config, jobs, records, retriever, backend), jobs, records, backend


def _options(args: argparse.Namespace):
    from qa_gen.models import DEFAULT_PERSPECTIVES, FocusPage, GenerationOptions

    focus = None
    if args.focus:
        focus = [FocusPage(url="", title=t) for t in args.focus]
    return GenerationOptions(
        target_count=args.count,
        perspectives=args.perspective or list(DEFAULT_PERSPECTIVES),
        focus_pages=focus,
    )


def cmd_index(args: argparse.Namespace) -> None:
    """Chunk and embed plain-text files into the evidence index."""
    from qa_gen.indexing.indexer import EvidenceIndex
    from qa_gen.models import new_id

    config = _load(args)
    index = EvidenceIndex.from_config(config.vector)

    total = 0
    for file_arg in args.files:
        path = Path(file_arg)
        if not path.is_file():
            print(f"Error: '{path}' is not a file.", file=sys.stderr)
            sys.exit(1)
        text = path.read_text(encoding="utf-8", errors="replace")
        n = index.add_document(
            project_id=args.project,
            doc_id=new_id(),
            filename=path.name,
            category=args.category,
            text=text,
            page_url=args.page_url,
        )
        print(f"  {path.name}: {n} chunks")
        total += n
    stats = index.stats()
    print(f"\nDone. {total} chunks added.")
    print(f"  Index: {stats['total_chunks']} chunks, model {stats['embedding_model']} ({stats['db_path']})")


def cmd_project(args: argparse.Namespace) -> None:
    """Create a project record."""
    from qa_gen.records.store import RecordStore

    config = _load(args)

    async def _run() -> None:
        records = RecordStore(db_path=config.store.db_path)
        await records.init()
        project = await records.create_project(args.name, args.target_system)
        print(f"Created project {project.id} ({project.name})")

    asyncio.run(_run())


def cmd_generate(args: argparse.Namespace) -> None:
    """Run a generation job and follow its progress until it finishes."""
    config = _load(args)

    async def _run() -> int:
        orchestrator, jobs, records, backend = _build_orchestrator(config)
        await jobs.init()
        await records.init()
        try:
            started = await orchestrator.start_job(args.project, _options(args))
            print(f"Job {started.job_id}: {started.total_batches} batch(es) of up to {started.batch_size}")
            last = ""
            while True:
                job = await jobs.get_job(started.job_id)
                if job is None:
                    print("Job expired.", file=sys.stderr)
                    return 1
                if job.message != last:
                    print(f"  [stage {job.stage}] {job.message}")
                    last = job.message
                if job.is_terminal:
                    break
                await asyncio.sleep(config.api.status_poll_interval)
            await orchestrator.shutdown()
            if job.status == "error":
                print(f"Error: {job.error}", file=sys.stderr)
                return 1
            print(f"\nDone: {job.count} items{' (partial)' if job.is_partial else ''}.")
            return 0
        finally:
            await backend.close()

    sys.exit(asyncio.run(_run()))


def cmd_plan(args: argparse.Namespace) -> None:
    """Create a batch plan, optionally executing it right away."""
    config = _load(args)

    async def _run() -> int:
        orchestrator, jobs, records, backend = _build_orchestrator(config)
        await jobs.init()
        await records.init()
        try:
            plan = await orchestrator.create_plan(args.project, _options(args), batch_size=args.batch_size)
            print(f"Plan {plan.id}: {len(plan.batches)} batches, {plan.total_items} items")
            for b in plan.batches:
                print(f"  #{b.batch_id} {b.category} / {b.perspective}: {b.count}")
            if not args.run:
                return 0
            job = await orchestrator.create_job(args.project, append_mode=bool(args.focus))
            done = await orchestrator.run_plan(job.id, plan.id, append_mode=bool(args.focus))
            if done is None or done.status == "error":
                print(f"Error: {done.error if done else 'job expired'}", file=sys.stderr)
                return 1
            print(f"\n{done.message}")
            return 0
        finally:
            await backend.close()

    sys.exit(asyncio.run(_run()))


def cmd_review(args: argparse.Namespace) -> None:
    """Review the project's current test items."""
    import json

    from qa_gen.jobs.store import JobStore
    from qa_gen.llm.backend import create_backend
    from qa_gen.records.store import RecordStore
    from qa_gen.review.reviewer import QualityReviewer

    config = _load(args)

    async def _run() -> None:
        records = RecordStore(db_path=config.store.db_path)
        jobs = JobStore(db_path=config.store.db_path)
        await records.init()
        await jobs.init()
        items = await records.list_test_items(args.project)
        if not items:
            print("No test items to review.", file=sys.stderr)
            sys.exit(1)
        backend = create_backend(config.provider)
        try:
            reviewer = QualityReviewer(
                backend,
                model=config.provider.review_model,
                temperature=config.generation.review_temperature,
                max_tokens=config.generation.review_max_tokens,
                jobs=jobs,
            )
            result = await reviewer.review(args.project, items)
        finally:
            await backend.close()
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))

    asyncio.run(_run())


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the FastAPI server."""
    import uvicorn

    from qa_gen.api.server import create_app

    config = _load(args)
    host = args.host or config.api.host
    port = args.port or config.api.port

    app = create_app(config=config)
    print(f"Starting server at http://{host}:{port}")
    print(f"API docs: http://{host}:{port}/docs\n")
    uvicorn.run(app, host=host, port=port)


def cmd_config(args: argparse.Namespace) -> None:
    """Print the effective configuration, or write it to the config file."""
    import yaml

    from qa_gen.config import config_to_dict, save_config

    config = _load(args)
    if args.write:
        path = Path(args.config) if args.config else Path("config.yaml")
        if path.exists() and not args.force:
            print(f"Error: '{path}' exists (use --force to overwrite).", file=sys.stderr)
            sys.exit(1)
        save_config(config, path)
        print(f"Wrote {path}")
        return
    print(yaml.safe_dump(config_to_dict(config), sort_keys=False, allow_unicode=True), end="")


def _add_generation_args(p: argparse.ArgumentParser, default_count: int) -> None:
    p.add_argument("--project", required=True, help="Project id")
    p.add_argument("--count", type=int, default=default_count, help="Number of test items")
    p.add_argument("--perspective", action="append", help="Test perspective (repeatable)")
    p.add_argument("--focus", action="append", help="Focus page title (repeatable); keeps existing items")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="qa-gen",
        description="RAG-driven test-case generation",
    )
    parser.add_argument("--config", help="Path to config.yaml", default=None)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set logging level (default: WARNING)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # index command
    p_index = sub.add_parser("index", help="Add plain-text evidence files to the index")
    p_index.add_argument("files", nargs="+", help="Text files to index")
    p_index.add_argument("--project", required=True, help="Project id")
    p_index.add_argument(
        "--category",
        choices=["spec_doc", "knowledge", "source_code", "site_analysis"],
        default="spec_doc",
    )
    p_index.add_argument("--page-url", default=None, help="Page URL (site analysis)")
    p_index.set_defaults(func=cmd_index)

    # project command
    p_project = sub.add_parser("project", help="Create a project")
    p_project.add_argument("name")
    p_project.add_argument("--target-system", default="")
    p_project.set_defaults(func=cmd_project)

    # generate command
    p_gen = sub.add_parser("generate", help="Generate test items for a project")
    _add_generation_args(p_gen, default_count=50)
    p_gen.set_defaults(func=cmd_generate)

    # plan command
    p_plan = sub.add_parser("plan", help="Create a batch plan (and optionally run it)")
    _add_generation_args(p_plan, default_count=100)
    p_plan.add_argument("--batch-size", type=int, default=None)
    p_plan.add_argument("--run", action="store_true", help="Execute the plan after creating it")
    p_plan.set_defaults(func=cmd_plan)

    # review command
    p_review = sub.add_parser("review", help="Quality-review a project's test items")
    p_review.add_argument("--project", required=True, help="Project id")
    p_review.set_defaults(func=cmd_review)

    # serve command
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", help="Bind host", default=None)
    p_serve.add_argument("--port", help="Bind port", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    # config command
    p_config = sub.add_parser("config", help="Show the effective config, or write it to disk")
    p_config.add_argument("--write", action="store_true", help="Write the config file (default config.yaml)")
    p_config.add_argument("--force", action="store_true", help="Overwrite an existing file")
    p_config.set_defaults(func=cmd_config)

    args = parser.parse_args()

    console_level = getattr(logging, args.log_level)
    logging.basicConfig(
        level=console_level,
        format="%(asctime)s [%(levelname)-8s] %(name)s — %(message)s",
    )
    for handler in logging.root.handlers:
        handler.setLevel(console_level)

    # File handler: WARNING+ only
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    from logging.handlers import RotatingFileHandler
    file_handler = RotatingFileHandler(
        log_dir / "qa_gen.log",
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s — %(message)s"
    ))
    logging.root.addHandler(file_handler)

    logger.info("Log file: %s", (log_dir / "qa_gen.log").resolve())
    args.func(args)


if __name__ == "__main__":
    main()
