#!/usr/bin/env python3
"""Backfill engine command line."""

import argparse
import json
import logging
import sys

from config.settings import settings
from src.models.backfill_job import JobStatus, JobType
from src.services.exceptions import BackfillError
from src.utils.database import init_database


# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.agent.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_service(dispatch_mode=None):
    from src.services.backfill_service import build_backfill_service

    init_database()
    return build_backfill_service(dispatch_mode=dispatch_mode)


def print_job(job):
    progress = job.progress
    print(f"{job.job_id}  {job.status:<10}  {job.job_type:<20}  {job.target_key}")
    print(f"    progress: {progress.position}/{progress.total_items} "
          f"(failed {progress.failed_items}, skipped {progress.skipped_items})")
    if job.error:
        print(f"    error: {job.error}")
    if job.result:
        print(f"    result: {json.dumps(job.result)}")


def cmd_init_db(args):
    init_database()
    print("✅ Database tables created/verified")


def cmd_recover(args):
    report = build_service(args.dispatch).recover()
    print(json.dumps(report.to_dict(), indent=2))


def cmd_start(args):
    config = json.loads(args.config) if args.config else {}
    if args.start_date:
        config["start_date"] = args.start_date
    if args.end_date:
        config["end_date"] = args.end_date

    service = build_service(args.dispatch)
    job_id = service.start_job(args.target_key, args.job_type, config)
    print(f"✅ Started job {job_id}")

    # Inline dispatch has already run the job to completion
    if (args.dispatch or settings.backfill.dispatch_mode) == "inline":
        print_job(service.get_job(job_id))


def cmd_list(args):
    service = build_service("inline")
    page = service.list_jobs(
        status=args.status, job_type=args.job_type, target_key=args.target_key,
        limit=args.limit, offset=args.offset,
    )
    if args.json:
        print(json.dumps({"jobs": [j.to_dict() for j in page["jobs"]], "total": page["total"]}, indent=2))
        return

    print(f"{page['total']} job(s)")
    for job in page["jobs"]:
        print_job(job)


def cmd_cancel(args):
    build_service("inline").cancel_job(args.job_id)
    print(f"🛑 Cancellation requested for {args.job_id}")


def cmd_force_cancel(args):
    if not args.yes:
        print("Force-cancel deletes the job's checkpoint and cannot be undone; pass --yes to confirm.")
        sys.exit(2)
    job = build_service("inline").force_cancel_job(args.job_id, reason=args.reason)
    print_job(job)


def cmd_serve(args):
    from src.web_interface import create_app

    app = create_app()
    app.run(host=args.host or settings.web.host, port=args.port or settings.web.port,
            debug=settings.web.debug)


def build_parser():
    parser = argparse.ArgumentParser(description="Backfill job orchestration engine")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the backfill tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("recover", help="Resume or fail orphaned jobs")
    p.add_argument("--dispatch", choices=["thread", "inline", "celery"], default="inline")
    p.set_defaults(func=cmd_recover)

    p = sub.add_parser("start", help="Start a backfill job")
    p.add_argument("target_key")
    p.add_argument("job_type", choices=[t.value for t in JobType])
    p.add_argument("--start-date")
    p.add_argument("--end-date")
    p.add_argument("--config", help="Job config as a JSON object")
    p.add_argument("--dispatch", choices=["thread", "inline", "celery"], default="inline")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("list", help="List jobs, newest first")
    p.add_argument("--status", action="append", choices=[s.value for s in JobStatus])
    p.add_argument("--job-type", action="append", choices=[t.value for t in JobType])
    p.add_argument("--target-key")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--offset", type=int, default=0)
    p.add_argument("--json", action="store_true", help="Print JSON")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("cancel", help="Gracefully cancel a job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("force-cancel", help="Force-cancel a job and delete its checkpoint")
    p.add_argument("job_id")
    p.add_argument("--reason")
    p.add_argument("--yes", action="store_true", help="Confirm the irreversible cancel")
    p.set_defaults(func=cmd_force_cancel)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except BackfillError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
