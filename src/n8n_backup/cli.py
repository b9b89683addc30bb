"""Command-line front-end for n8n-backup.

Every command resolves configuration the same way:
CLI args > env vars (.env loaded first) > YAML config > defaults.

Exit codes:
    0  success (also partial_success unless ``--strict``)
    1  failed, or a configuration / profile / store error
    2  aborted by the compatibility gate
    3  partial_success with ``--strict``
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import build_config
from .core.async_utils import CancelToken
from .core.client import N8nClient
from .core.pocketbase import PocketBaseClient
from .engine.models import ResourceType, RunStatus, VersionReportSummary
from .engine.orchestrator import Orchestrator
from .engine.reporter import (
    format_diff,
    format_retention,
    format_summary,
    format_versions,
    summary_to_json,
)
from .engine.retention import policy_from_settings
from .engine.strategies import parse_strategy
from .errors import N8nBackupError, PersistenceError
from .logger import setup_logging
from .store.base import VersionFilter
from .store.json_store import JsonVersionStore
from .store.pocketbase_store import PocketBaseVersionStore
from .store.profiles import ProfileStore
from .version import check_version_consistency, get_version_info

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_PARTIAL = 3


def exit_code_for(status: RunStatus, strict: bool = False) -> int:
    """Map an overall run status to a process exit code."""
    if status == RunStatus.SUCCESS:
        return EXIT_SUCCESS
    if status == RunStatus.PARTIAL_SUCCESS:
        return EXIT_PARTIAL if strict else EXIT_SUCCESS
    if status == RunStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_FAILED


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_store(config: Config):
    """Create the version store selected by *config*."""
    if config.store_backend == "pocketbase":
        return PocketBaseVersionStore(
            PocketBaseClient(
                config.pocketbase_url,
                config.admin_email,
                config.admin_password,
                timeout=config.request_timeout,
            )
        )
    return JsonVersionStore(config.store_path)


def _bootstrap(args: argparse.Namespace) -> Config:
    # .env first so ${VAR} interpolation in YAML can use its values
    load_dotenv()
    unified = build_config(load_hierarchical_config())
    config = load_config(
        store_backend=args.store_backend,
        store_path=args.store_path,
        debug=args.debug,
        unified=unified,
    )
    setup_logging(
        debug=config.debug,
        log_file=args.log_file or config.log_file,
        debug_format=args.log_format,
        level=config.log_level,
    )
    sources = [str(p) for p in discover_config_files()] or ["defaults"]
    logger.debug("Configuration loaded from: %s", ", ".join(sources))
    return config


def _resource_types(value: str | None) -> list[ResourceType] | None:
    if not value:
        return None
    try:
        return [ResourceType(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError:
        valid = ", ".join(t.value for t in ResourceType)
        raise argparse.ArgumentTypeError(
            f"Unknown resource type in '{value}'. Valid: {valid}"
        ) from None


async def _with_interrupt(run):
    """Await ``run(token)``; Ctrl-C cancels the token instead of the task."""
    token = CancelToken()
    loop = asyncio.get_running_loop()
    install = sys.platform != "win32"
    if install:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    try:
        return await run(token)
    finally:
        if install:
            loop.remove_signal_handler(signal.SIGINT)


def _emit_summary(summary: VersionReportSummary, args: argparse.Namespace) -> int:
    if args.json:
        print(json.dumps(summary_to_json(summary), indent=2))
    else:
        print(format_summary(summary, verbose=args.verbose))
    return exit_code_for(summary.status, strict=args.strict)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_backup(args, config, store, profiles) -> int:
    profile = profiles.resolve(args.profile)
    options = config.run_options(
        resource_types=args.types,
        base_version_id=args.base,
        tags=args.tag,
    )
    orchestrator = Orchestrator(N8nClient(config.request_timeout), store)
    summary = asyncio.run(orchestrator.run_backup(profile, options))
    return _emit_summary(summary, args)


def cmd_restore(args, config, store, profiles) -> int:
    target = profiles.resolve(args.profile)
    orchestrator = Orchestrator(N8nClient(config.request_timeout), store)

    if args.dry_run:
        result = asyncio.run(
            orchestrator.preview_restore(args.version_id, target, args.types)
        )
        print(format_diff(result, f"Restore preview: {args.version_id} -> {target.name}"))
        return EXIT_SUCCESS

    options = config.run_options(
        strategy=args.strategy and parse_strategy(args.strategy),
        max_concurrency=args.concurrency,
        timeout=args.timeout,
        resource_types=args.types,
        tags=args.tag,
    )
    summary = asyncio.run(
        _with_interrupt(
            lambda token: orchestrator.run_restore(
                args.version_id, target, options, cancel_token=token
            )
        )
    )
    return _emit_summary(summary, args)


def cmd_sync(args, config, store, profiles) -> int:
    source = profiles.resolve(args.source)
    target = profiles.resolve(args.target)
    if source.id == target.id:
        print("Error: source and target profiles must differ", file=sys.stderr)
        return EXIT_FAILED
    options = config.run_options(
        strategy=args.strategy and parse_strategy(args.strategy),
        max_concurrency=args.concurrency,
        timeout=args.timeout,
        resource_types=args.types,
        tags=args.tag,
    )
    orchestrator = Orchestrator(N8nClient(config.request_timeout), store)
    summary = asyncio.run(
        _with_interrupt(
            lambda token: orchestrator.run_sync(
                source, target, options, cancel_token=token
            )
        )
    )
    return _emit_summary(summary, args)


def cmd_versions(args, config, store, profiles) -> int:
    profile_id = profiles.get(args.profile).id if args.profile else None
    versions = store.list_versions(
        VersionFilter(
            profile_id=profile_id,
            operation=args.operation,
            status=args.status,
            limit=args.limit,
        )
    )
    if args.json:
        print(json.dumps([v.model_dump(mode="json") for v in versions], indent=2))
    else:
        print(format_versions(versions))
    return EXIT_SUCCESS


def cmd_show(args, config, store, profiles) -> int:
    detail = store.get_version(args.version_id)
    if args.json:
        print(json.dumps(detail.model_dump(mode="json"), indent=2))
        return EXIT_SUCCESS
    print(format_versions([detail.version]))
    print("")
    for record in detail.records:
        report = record.report
        name = f" ({record.name})" if record.name else ""
        print(
            f"  {record.resource_type.value}:{record.resource_id}{name}"
            f"  {report.status.value}  {report.message}"
        )
    return EXIT_SUCCESS


def cmd_diff(args, config, store, profiles) -> int:
    orchestrator = Orchestrator(N8nClient(config.request_timeout), store)
    result = orchestrator.compare_versions(args.base, args.current)
    if args.json:
        print(
            json.dumps(
                {
                    "counts": result.counts(),
                    "added": [s.label for s in result.added],
                    "modified": [s.label for s in result.modified],
                    "removed": [s.label for s in result.removed],
                },
                indent=2,
            )
        )
    else:
        print(format_diff(result, f"Comparison: {args.base} -> {args.current}"))
    return EXIT_SUCCESS


def cmd_retention(args, config, store, profiles) -> int:
    policy = policy_from_settings(
        keep_last=args.keep_last if args.keep_last is not None else config.keep_last,
        keep_days=args.keep_days if args.keep_days is not None else config.keep_days,
        keep_tags=args.keep_tag if args.keep_tag is not None else config.keep_tags,
    )
    profile_id = profiles.get(args.profile).id if args.profile else None
    orchestrator = Orchestrator(N8nClient(config.request_timeout), store)
    cleanup = orchestrator.run_cleanup(policy, apply=args.apply, profile_id=profile_id)
    print(format_retention(cleanup))
    return EXIT_SUCCESS if cleanup.status == RunStatus.SUCCESS else EXIT_FAILED


def cmd_tag(args, config, store, profiles) -> int:
    version = store.tag_version(args.version_id, args.tag)
    print(f"Version {version.id} tags: {', '.join(version.tags)}")
    return EXIT_SUCCESS


def cmd_profile(args, config, store, profiles) -> int:
    if args.profile_command == "add":
        api_key = args.api_key or os.getenv("N8N_API_KEY") or getpass.getpass("API key: ")
        profile = profiles.add(args.name, args.url, api_key, make_default=args.default)
        print(f"Added profile {profile.name} ({profile.url})")
    elif args.profile_command == "list":
        entries = profiles.list()
        if not entries:
            print("No profiles configured.")
        for p in entries:
            marker = "*" if p.is_default else " "
            print(f"{marker} {p.name:<20} {p.url}")
    elif args.profile_command == "remove":
        removed = profiles.remove(args.name)
        print(f"Removed profile {removed.name}")
    elif args.profile_command == "default":
        profile = profiles.set_default(args.name)
        print(f"Default profile: {profile.name}")
    return EXIT_SUCCESS


def cmd_version(args, config, store, profiles) -> int:
    print(get_version_info())
    is_consistent, message = check_version_consistency()
    if not is_consistent:
        logger.debug(message)
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_run_output(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with code 3 on partial_success",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="List every successful object"
    )
    parser.add_argument(
        "--types",
        type=_resource_types,
        help="Comma-separated resource types (workflow,credential,tag)",
    )
    parser.add_argument(
        "--tag",
        action="append",
        default=[],
        help="Protection tag for the new version (repeatable)",
    )


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--strategy",
        help="Merge strategy: source-wins, target-wins, update-existing, add-missing",
    )
    parser.add_argument(
        "--concurrency", type=int, help="Parallel reconcile calls (1-64)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Stop issuing new changes after this many seconds",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="n8n-backup",
        description="Versioned backup, restore and sync for n8n instances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  n8n-backup profile add prod https://n8n.example.com --api-key KEY
  n8n-backup backup --tag release
  n8n-backup versions --limit 5
  n8n-backup restore <version-id> --profile staging --strategy add-missing
  n8n-backup sync --from prod --to staging
  n8n-backup retention --keep-last 10 --apply
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also append logs to this file")
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Log record format on stderr",
    )
    parser.add_argument(
        "--store-backend",
        choices=("json", "pocketbase"),
        help="Override the version store backend",
    )
    parser.add_argument("--store-path", help="Override the json store directory")
    parser.add_argument(
        "--version", action="version", version=f"n8n-backup version {__version__}"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Capture a profile into a new version")
    backup.add_argument("--profile", help="Profile name (default profile if omitted)")
    backup.add_argument("--base", help="Version id to compute changes against")
    _add_run_output(backup)
    backup.set_defaults(handler=cmd_backup)

    restore = commands.add_parser("restore", help="Apply a stored version to a profile")
    restore.add_argument("version_id")
    restore.add_argument("--profile", help="Target profile (default profile if omitted)")
    restore.add_argument(
        "--dry-run", action="store_true", help="Only show what would change"
    )
    _add_apply_options(restore)
    _add_run_output(restore)
    restore.set_defaults(handler=cmd_restore)

    sync = commands.add_parser("sync", help="Copy one profile's objects to another")
    sync.add_argument("--from", dest="source", required=True, help="Source profile")
    sync.add_argument("--to", dest="target", required=True, help="Target profile")
    _add_apply_options(sync)
    _add_run_output(sync)
    sync.set_defaults(handler=cmd_sync)

    versions = commands.add_parser("versions", help="List stored versions")
    versions.add_argument("--profile")
    versions.add_argument(
        "--operation", choices=("backup", "restore", "sync")
    )
    versions.add_argument(
        "--status", choices=[s.value for s in RunStatus]
    )
    versions.add_argument("--limit", type=int)
    versions.add_argument("--json", action="store_true")
    versions.set_defaults(handler=cmd_versions)

    show = commands.add_parser("show", help="Show one version and its objects")
    show.add_argument("version_id")
    show.add_argument("--json", action="store_true")
    show.set_defaults(handler=cmd_show)

    compare = commands.add_parser("diff", help="Compare two stored versions")
    compare.add_argument("base")
    compare.add_argument("current")
    compare.add_argument("--json", action="store_true")
    compare.set_defaults(handler=cmd_diff)

    retention = commands.add_parser(
        "retention", help="Evaluate the retention policy (delete with --apply)"
    )
    retention.add_argument("--keep-last", type=int)
    retention.add_argument("--keep-days", type=float)
    retention.add_argument("--keep-tag", action="append")
    retention.add_argument("--profile", help="Only consider this profile's versions")
    retention.add_argument(
        "--apply", action="store_true", help="Delete eligible versions"
    )
    retention.set_defaults(handler=cmd_retention)

    tag = commands.add_parser("tag", help="Add a protection tag to a version")
    tag.add_argument("version_id")
    tag.add_argument("tag")
    tag.set_defaults(handler=cmd_tag)

    profile = commands.add_parser("profile", help="Manage n8n instance profiles")
    profile_commands = profile.add_subparsers(dest="profile_command", required=True)
    add = profile_commands.add_parser("add")
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--api-key", help="API key (prefer N8N_API_KEY env var)")
    add.add_argument("--default", action="store_true", help="Make this the default")
    profile_commands.add_parser("list")
    remove = profile_commands.add_parser("remove")
    remove.add_argument("name")
    default = profile_commands.add_parser("default")
    default.add_argument("name")
    profile.set_defaults(handler=cmd_profile)

    version = commands.add_parser("version", help="Print the tool version")
    version.set_defaults(handler=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    try:
        config = _bootstrap(args)
        store = build_store(config)
        profiles = ProfileStore(config.profiles_path, audit_sink=store)
        return args.handler(args, config, store, profiles)
    except PersistenceError as exc:
        if exc.summary is not None:
            print(format_summary(exc.summary), file=sys.stderr)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except (N8nBackupError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_FAILED


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
