"""hookdeploy CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import subprocess
import sys
from pathlib import Path

from hookdeploy.config import (
    DEFAULT_CONFIG,
    DEFAULT_PIPELINE,
    load_config,
    resolve_config_dir,
    resolve_data_dir,
)
from hookdeploy.credentials import CredentialStore
from hookdeploy.errors import AuthenticationError, ValidationError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, datefmt=LOG_DATEFMT)


def _git_origin(repo_root: Path) -> str:
    """Clone URL of the ``origin`` remote, or empty if there is none."""
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .hookdeploy/ directory with a default config and one pipeline."""
    config_dir = resolve_config_dir(repo_root)
    pipelines_dir = config_dir / "pipelines"

    if config_dir.exists():
        print(f"Error: {config_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.resolve().name
    pipeline_name = re.sub(r"[^a-zA-Z0-9_.-]", "-", project_name).lstrip("-_.") or "app"
    repository = _git_origin(repo_root) or "git@github.com:owner/repo.git"

    pipelines_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text(DEFAULT_CONFIG.format(project_name=project_name))
    (pipelines_dir / f"{pipeline_name}.yaml").write_text(
        DEFAULT_PIPELINE.format(pipeline_name=pipeline_name, repository=repository)
    )

    print(f"Initialized hookdeploy project at {config_dir}")
    print(f"  Project:    {project_name}")
    print(f"  Pipeline:   {pipeline_name}")
    print(f"  Repository: {repository}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_dir / 'config.yaml'} (targets, credentials)")
    print(f"  2. Review {pipelines_dir / (pipeline_name + '.yaml')}")
    print("  3. Set HOOKDEPLOY_DEPLOY_KEY and HOOKDEPLOY_WEBHOOK_SECRET")
    print(f"  4. Run: hookdeploy serve --repo-root {repo_root}")


def _validate(repo_root: Path, check_credentials: bool) -> int:
    """Load the configuration and report problems. Returns an exit code."""
    config_dir = resolve_config_dir(repo_root)
    try:
        config = load_config(config_dir)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    failures = 0
    if check_credentials:
        store = CredentialStore(config.credentials)
        for name in store.names():
            try:
                store.resolve(name)
            except AuthenticationError as exc:
                print(f"Credential error: {exc}", file=sys.stderr)
                failures += 1

    print(f"Configuration OK: {config_dir}")
    for name, pipeline in sorted(config.pipelines.items()):
        stages = ", ".join(f"{s.name}({s.kind.value})" for s in pipeline.stages)
        print(f"  {name}: targets={','.join(pipeline.targets)} stages={stages}")
    return 1 if failures else 0


async def _run_pipeline(repo_root: Path, pipeline: str, ref: str | None, commit: str | None) -> int:
    from hookdeploy.server import DeployServer

    server = DeployServer(repo_root)
    await server.start(recover=False)
    try:
        if server.config is None or server.config.get_pipeline(pipeline) is None:
            print(f"Error: unknown pipeline '{pipeline}'", file=sys.stderr)
            return 1
        status = await server.run_once(pipeline, ref=ref, commit=commit)
        runs = await server.registry.list(pipeline, limit=1)
    finally:
        await server.stop()

    if runs:
        run = runs[0]
        print(f"Run {run.run_id}: {run.status.value}")
        for result in run.stage_results:
            line = f"  [{result.status.value:>9}] {result.stage_name}"
            if result.error_kind:
                line += f" - {result.error_kind.value}: {result.error_message}"
            print(line)
    return 0 if status.value == "succeeded" else 1


def _add_repo_root(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )


def _add_log_level(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def main():
    parser = argparse.ArgumentParser(
        prog="hookdeploy",
        description="hookdeploy — webhook-driven deployment pipelines",
    )

    subparsers = parser.add_subparsers(dest="command")

    # hookdeploy init
    init_parser = subparsers.add_parser("init", help="Initialize a .hookdeploy/ directory")
    _add_repo_root(init_parser)

    # hookdeploy serve
    serve_parser = subparsers.add_parser("serve", help="Start the webhook server")
    _add_repo_root(serve_parser)
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    _add_log_level(serve_parser)

    # hookdeploy validate
    validate_parser = subparsers.add_parser("validate", help="Validate the configuration")
    _add_repo_root(validate_parser)
    validate_parser.add_argument(
        "--check-credentials",
        action="store_true",
        help="Also check that every credential's key file is readable",
    )

    # hookdeploy run
    run_parser = subparsers.add_parser("run", help="Run a pipeline once without the server")
    run_parser.add_argument("pipeline", help="Pipeline name")
    _add_repo_root(run_parser)
    run_parser.add_argument("--ref", help="Branch or tag to deploy (e.g. refs/heads/main)")
    run_parser.add_argument("--commit", help="Commit to check out after cloning")
    _add_log_level(run_parser)

    args = parser.parse_args()

    if args.command == "init":
        _init_project(args.repo_root)
        return

    if args.command == "validate":
        sys.exit(_validate(args.repo_root, args.check_credentials))

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.log_level)

    config_dir = resolve_config_dir(args.repo_root)
    if not config_dir.exists():
        print(f"Error: {config_dir} not found", file=sys.stderr)
        print("Run 'hookdeploy init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    if args.command == "run":
        try:
            code = asyncio.run(_run_pipeline(args.repo_root, args.pipeline, args.ref, args.commit))
        except ValidationError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            code = 1
        sys.exit(code)

    # serve
    import uvicorn

    from hookdeploy.server import create_app

    logging.getLogger(__name__).info("Data directory: %s", resolve_data_dir(args.repo_root))
    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
