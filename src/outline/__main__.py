"""Outline CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path

from outline.config import DEFAULT_STAGES

# ── Default templates for `outline init` ─────────────────────────────────────

_DEFAULT_CONFIG = """\
# .outline/config.yaml: Outline project configuration

project:
  name: "{project_name}"
  owner: "{owner}"
  repo: "{repo}"
  default_branch: main

pipeline:
  stages: [{stages}]
  interpreter: bash
  script_path: "scripts/{{stage}}.sh"
  merge_method: squash
  stage_timeout: 1800
  keep_workspace: false
  log_url_template: "http://localhost:8000/runs/{{run_id}}/logs"

runtime:
  reconciliation_interval: 5
  max_concurrent_runs: 4
  dispatch_mode: background
  token_file: data/token.txt

registry:
  backend: memory
"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_remote(url: str) -> tuple[str, str]:
    """Parse owner/repo from a github.com SSH or HTTPS remote URL."""
    if "github.com" not in url:
        return "", ""
    tail = url.split("github.com")[-1].lstrip("/:")
    if tail.endswith(".git"):
        tail = tail[: -len(".git")]
    parts = tail.split("/")
    if len(parts) >= 2:
        return parts[0], parts[1]
    return "", ""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .outline/ directory with default configuration."""
    outline_dir = repo_root / ".outline"

    if outline_dir.exists():
        print(f"Error: {outline_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.name
    owner, repo = "", project_name

    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            parsed_owner, parsed_repo = _parse_remote(result.stdout.strip())
            if parsed_owner:
                owner, repo = parsed_owner, parsed_repo
    except (OSError, subprocess.SubprocessError):
        pass

    outline_dir.mkdir(parents=True)
    (outline_dir / "config.yaml").write_text(
        _DEFAULT_CONFIG.format(
            project_name=project_name,
            owner=owner,
            repo=repo,
            stages=", ".join(DEFAULT_STAGES),
        )
    )
    print(f"Initialized Outline in {outline_dir}")
    print("  Edit .outline/config.yaml, add scripts/<stage>.sh, then run 'outline serve'.")


def _load(repo_root: Path):
    from outline.config import load_config

    config_dir = os.environ.get("OUTLINE_CONFIG_DIR", "").strip()
    outline_dir = Path(config_dir) if config_dir else repo_root / ".outline"
    return load_config(outline_dir)


def _resolve_subject(args, config) -> tuple[str, str]:
    owner = args.owner or config.project.owner
    repo = args.repo or config.project.repo
    if not owner or not repo:
        print("Error: --owner and --repo are required (or set project.owner/repo)", file=sys.stderr)
        sys.exit(2)
    return owner, repo


async def _dispatch(args) -> int:
    from outline.dispatch import DispatchCoordinator
    from outline.models import validate_stage_names
    from outline.pipeline import PipelineRunner
    from outline.registry import create_registry
    from outline.session import GitHubSession

    config = _load(args.repo_root)
    owner, repo = _resolve_subject(args, config)
    if args.stages:
        try:
            validate_stage_names(args.stages)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(2)

    token_file = config.runtime.token_file
    if token_file and not Path(token_file).is_absolute():
        token_file = str(args.repo_root / token_file)
    session = GitHubSession.from_environment(token_file)
    await session.start()
    registry = create_registry(config.registry)
    await registry.initialize()
    try:
        runner = PipelineRunner(
            config.pipeline,
            session.github,
            config.workspace_path(args.repo_root),
            token=session.token,
        )
        coordinator = DispatchCoordinator(
            registry,
            session.github,
            runner,
            default_stages=config.pipeline.stages,
            max_concurrent_runs=config.runtime.max_concurrent_runs,
        )
        run = await coordinator.dispatch_and_wait(owner, repo, args.pr_number, args.stages)
    finally:
        await registry.close()
        await session.invalidate()

    for line in run.logs:
        print(line)
    print(f"Run {run.run_id}: {run.status.value} ({run.conclusion.value})")
    return 0 if run.conclusion and run.conclusion.value == "success" else 1


async def _create_test_pr(args) -> int:
    from outline.session import GitHubSession
    from outline.testpr import DEFAULT_TEST_FILE, create_test_pr

    config = _load(args.repo_root)
    owner, repo = _resolve_subject(args, config)
    token_file = config.runtime.token_file
    if token_file and not Path(token_file).is_absolute():
        token_file = str(args.repo_root / token_file)

    session = GitHubSession.from_environment(token_file)
    await session.start()
    try:
        pr = await create_test_pr(
            session.github,
            owner,
            repo,
            base=args.base or config.project.default_branch,
            file_path=args.file or DEFAULT_TEST_FILE,
        )
    finally:
        await session.invalidate()
    print(f"PR created: {pr.get('html_url')}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="outline",
        description="Outline — pull-request CI/CD pipeline runner",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_repo_root(p):
        p.add_argument(
            "--repo-root",
            type=Path,
            default=Path.cwd(),
            help="Path to the directory holding .outline/ (default: current directory)",
        )

    # outline init
    init_parser = subparsers.add_parser("init", help="Initialize a new Outline project")
    add_repo_root(init_parser)

    # outline serve
    serve_parser = subparsers.add_parser("serve", help="Start the Outline API server")
    add_repo_root(serve_parser)
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")

    # outline dispatch
    dispatch_parser = subparsers.add_parser(
        "dispatch", help="Run the pipeline for one pull request and wait for the result"
    )
    add_repo_root(dispatch_parser)
    dispatch_parser.add_argument("pr_number", type=int, help="Pull request number")
    dispatch_parser.add_argument("--owner", help="Repository owner (default: project.owner)")
    dispatch_parser.add_argument("--repo", help="Repository name (default: project.repo)")
    dispatch_parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        help="Stage to run (repeatable; default: pipeline.stages)",
    )

    # outline create-test-pr
    testpr_parser = subparsers.add_parser(
        "create-test-pr", help="Open a throwaway PR to exercise the pipeline"
    )
    add_repo_root(testpr_parser)
    testpr_parser.add_argument("--owner", help="Repository owner (default: project.owner)")
    testpr_parser.add_argument("--repo", help="Repository name (default: project.repo)")
    testpr_parser.add_argument("--base", help="Base branch (default: project.default_branch)")
    testpr_parser.add_argument("--file", help="Tracking file to append to")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    _setup_logging(args.log_level)

    if args.command == "dispatch":
        sys.exit(asyncio.run(_dispatch(args)))

    if args.command == "create-test-pr":
        sys.exit(asyncio.run(_create_test_pr(args)))

    # serve
    outline_dir = args.repo_root / ".outline"
    if not outline_dir.exists() and not os.environ.get("OUTLINE_CONFIG_DIR"):
        print(f"Error: .outline/ directory not found at {outline_dir}", file=sys.stderr)
        print("Run 'outline init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from outline.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
