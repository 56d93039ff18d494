from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict

from .channels import build_channel
from .config import ConfigError, load_profiles_file, load_runtime_config
from .db import get_db_url
from .errors import JobError
from .services.generation_service import get_generation_status, request_generation
from .storage import (
    count_jobs_by_status,
    get_profile,
    init_db,
    list_jobs,
    list_pending_job_ids,
    list_profiles,
    upsert_profile,
)
from .utils import configure_logging, log_event
from .worker import WORKER_JOB_TYPES


def _setup_logging() -> logging.Logger:
    return configure_logging("contentgen")


def _open(args: argparse.Namespace, logger: logging.Logger):
    conn = init_db()
    try:
        config = load_runtime_config(conn, args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    log_event(logger, logging.INFO, "db_migrated", backend=conn.backend, target=_redact(conn.target))
    conn.close()
    return 0


def _cmd_profiles_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        profiles = load_profiles_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "profiles_import_error", error=str(exc))
        return 1
    conn = init_db()
    imported = 0
    for profile in profiles:
        try:
            profile_id = upsert_profile(conn, profile)
        except ValueError as exc:
            log_event(logger, logging.ERROR, "profile_invalid", error=str(exc))
            continue
        imported += 1
        log_event(logger, logging.INFO, "profile_imported", profile_id=profile_id)
    log_event(logger, logging.INFO, "profiles_imported", count=imported, total=len(profiles))
    conn.close()
    return 0 if imported == len(profiles) else 1


def _cmd_profiles_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    profiles = list_profiles(conn, user_id=args.user_id)
    conn.close()
    if not profiles:
        log_event(
            logger,
            logging.WARNING,
            "no_profiles",
            hint="Import profiles with `contentgen profiles import profiles.yml`",
        )
        return 1
    for profile in profiles:
        log_event(
            logger,
            logging.INFO,
            "profile",
            profile_id=profile.id,
            user_id=profile.user_id,
            kind=profile.kind,
            brand_name=json.dumps(profile.brand_name),
        )
    log_event(logger, logging.INFO, "profiles_listed", count=len(profiles))
    return 0


def _cmd_profiles_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    profile = get_profile(conn, args.profile_id)
    conn.close()
    if profile is None:
        log_event(logger, logging.ERROR, "profile_not_found", profile_id=args.profile_id)
        return 1
    print(json.dumps(asdict(profile), indent=2, sort_keys=True))
    return 0


def _cmd_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        channel = build_channel(config, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return 1
    try:
        batch_id = request_generation(
            conn,
            channel,
            config,
            args.user_id,
            profile_id=args.profile_id,
            post_count=args.post_count,
        )
    except JobError as exc:
        log_event(logger, logging.ERROR, "generate_failed", error=str(exc))
        return 1
    finally:
        channel.close()
        conn.close()
    print(json.dumps({"success": True, "batchId": batch_id}))
    return 0


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    status = get_generation_status(conn, args.batch_id, args.user_id)
    conn.close()
    if status is None:
        log_event(logger, logging.ERROR, "batch_not_found", batch_id=args.batch_id)
        return 1
    print(json.dumps(status, indent=2, sort_keys=True))
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    jobs = list_jobs(conn, limit=args.limit, status=args.status)
    counts = count_jobs_by_status(conn)
    conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    log_event(logger, logging.INFO, "jobs_listed", count=len(jobs), **counts)
    return 0


def _cmd_jobs_sweep(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        channel = build_channel(config, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return 1
    job_ids = list_pending_job_ids(
        conn,
        min_age_seconds=args.min_age,
        allowed_types=WORKER_JOB_TYPES,
        limit=args.limit,
    )
    published = sum(1 for job_id in job_ids if channel.publish(job_id))
    channel.close()
    conn.close()
    log_event(
        logger,
        logging.INFO,
        "jobs_swept",
        pending=len(job_ids),
        published=published,
        strategy=channel.strategy,
    )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("contentgen.api:app", host=args.host, port=args.port)
    return 0


def _redact(target: str) -> str:
    if target == get_db_url() and "@" in target:
        scheme, _, rest = target.partition("://")
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return target


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contentgen", description="contentgen CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to CG_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply pending migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    profiles_parser = subparsers.add_parser("profiles", help="Manage brand and influencer profiles")
    profiles_subparsers = profiles_parser.add_subparsers(dest="profiles_command", required=True)

    profiles_import = profiles_subparsers.add_parser("import", help="Import profiles from YAML")
    profiles_import.add_argument("path", help="Path to profiles YAML file")
    profiles_import.set_defaults(func=_cmd_profiles_import)

    profiles_list = profiles_subparsers.add_parser("list", help="List profiles")
    profiles_list.add_argument("--user-id", default=None)
    profiles_list.set_defaults(func=_cmd_profiles_list)

    profiles_show = profiles_subparsers.add_parser("show", help="Show a profile")
    profiles_show.add_argument("profile_id")
    profiles_show.set_defaults(func=_cmd_profiles_show)

    generate_parser = subparsers.add_parser("generate", help="Request a generation batch")
    generate_parser.add_argument("--user-id", required=True)
    generate_parser.add_argument("--profile-id", default=None)
    generate_parser.add_argument("--post-count", type=int, default=None)
    generate_parser.set_defaults(func=_cmd_generate)

    status_parser = subparsers.add_parser("status", help="Show a batch status")
    status_parser.add_argument("batch_id")
    status_parser.add_argument("--user-id", required=True)
    status_parser.set_defaults(func=_cmd_status)

    jobs_parser = subparsers.add_parser("jobs", help="Inspect the job queue")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20)
    jobs_list.add_argument("--status", default=None)
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_sweep = jobs_subparsers.add_parser(
        "sweep", help="Re-publish wake signals for pending jobs"
    )
    jobs_sweep.add_argument("--min-age", type=int, default=60, help="Minimum job age in seconds")
    jobs_sweep.add_argument("--limit", type=int, default=100)
    jobs_sweep.set_defaults(func=_cmd_jobs_sweep)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
