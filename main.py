"""
Retail expansion pipeline - command line entry point.

    python main.py submit small-country --aggression 30
    python main.py worker
    python main.py status 1
    python main.py result 1 --csv suggestions.csv
"""

import argparse
import json
import os
import sys
from typing import List, Optional
import logging

import pandas as pd

from expansion.budget import RateLimiter
from expansion.cache import ResultCache
from expansion.config import ExpansionSettings
from expansion.errors import ExpansionError
from expansion.job_store import JobStore
from expansion.models import JobParams
from expansion.orchestrator import JobOrchestrator, target_count_for_aggression
from expansion.worker import Worker
from providers.overpass import OverpassLoader
from providers.rationale import OpenAIRationaleProvider
from providers.regions import FileRegionProvider, OverpassRegionProvider
from providers.routing import OSRMClient
from providers.stores import JsonStoreRegistry

log = logging.getLogger(__name__)


def build_orchestrator(settings: ExpansionSettings, regions_dir: str = "regions",
                       stores_path: str = "stores.json", use_overpass: bool = False) -> JobOrchestrator:
    """Wire the production collaborators from settings and environment."""
    cache = ResultCache(settings.cache_db_path, ttl_days=settings.cache_ttl_days)

    regions = FileRegionProvider(regions_dir)
    if use_overpass:
        regions = OverpassRegionProvider(regions, OverpassLoader(cache=cache))

    provider = None
    if os.getenv("OPENAI_API_KEY"):
        provider = OpenAIRationaleProvider(settings)
    else:
        log.warning("OPENAI_API_KEY not set; every suggestion gets a template rationale")

    routing = OSRMClient(settings.routing_url) if settings.routing_url else None

    return JobOrchestrator(
        store=JobStore(settings.jobs_db_path),
        region_provider=regions,
        store_registry=JsonStoreRegistry(stores_path),
        settings=settings,
        rationale_provider=provider,
        cache=cache,
        routing_client=routing,
        rate_limiter=RateLimiter.from_settings(settings),
    )


def _cmd_submit(orchestrator: JobOrchestrator, args) -> int:
    if args.target is not None:
        target = args.target
    else:
        target = target_count_for_aggression(args.aggression)

    params = JobParams(
        region=args.region,
        target_count=target,
        ai_enabled=not args.no_ai,
        ai_fraction=args.ai_fraction,
        ai_hard_cap=args.ai_cap,
        cost_cap=args.cost_cap,
        model=args.model,
        seed=args.seed,
    )
    submitted = orchestrator.submit(params, args.key)
    verb = "Reusing" if submitted.reused else "Queued"
    print(f"{verb} job {submitted.job_id} ({params.region}, target {target})")

    if args.run and not submitted.reused:
        orchestrator.process_next("cli")
        return _cmd_status(orchestrator, argparse.Namespace(job_id=submitted.job_id))
    return 0


def _cmd_status(orchestrator: JobOrchestrator, args) -> int:
    status = orchestrator.get_status(args.job_id)
    print(json.dumps(status, indent=2))
    return 0


def _cmd_result(orchestrator: JobOrchestrator, args) -> int:
    result = orchestrator.get_result(args.job_id)
    if result is None:
        print(f"Job {args.job_id} has no result yet")
        return 1

    df = pd.DataFrame([s.to_row() for s in result.suggestions])
    if args.csv:
        df.to_csv(args.csv, index=False)
        print(f"Wrote {len(df)} suggestions to {args.csv}")
    else:
        columns = [c for c in ("id", "region", "total_score", "tier", "settlement") if c in df.columns]
        print(df[columns].to_string(index=False))

    meta = result.metadata
    print(f"\nStatus: {result.status}  survivors: {meta.get('survivors')}  "
          f"AI: {meta.get('ai_count')}/{meta.get('ai_tier_size')}  "
          f"demoted: {meta.get('demoted_count')}  cost: ${meta.get('total_cost', 0):.4f}")
    for warning in meta.get("warnings", []):
        print(f"  ! {warning}")
    return 0


def _cmd_cancel(orchestrator: JobOrchestrator, args) -> int:
    print(f"Job {args.job_id}: {orchestrator.cancel(args.job_id)}")
    return 0


def _cmd_retry(orchestrator: JobOrchestrator, args) -> int:
    if orchestrator.retry(args.job_id):
        print(f"Job {args.job_id} requeued")
        return 0
    print(f"Job {args.job_id} is not retryable")
    return 1


def _cmd_recover(orchestrator: JobOrchestrator, args) -> int:
    requeued = orchestrator.recover_stale_jobs()
    print(f"Requeued {len(requeued)} stale jobs")
    removed = orchestrator.store.cleanup_old_jobs(orchestrator.settings.job_retention_hours)
    print(f"Deleted {removed} finished jobs older than {orchestrator.settings.job_retention_hours}h")
    if orchestrator.cache is not None:
        purged = orchestrator.cache.purge_expired()
        print(f"Purged {purged} expired cache entries")
    return 0


def _cmd_worker(orchestrator: JobOrchestrator, args) -> int:
    worker = Worker(orchestrator)
    print(f"Worker {worker.worker_id} starting...")
    print("Press Ctrl+C to stop")
    try:
        worker.run(max_jobs=args.max_jobs)
    except KeyboardInterrupt:
        print("\nShutting down...")
        worker.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Retail expansion site pipeline")
    parser.add_argument("--regions-dir", default="regions", help="Directory of <region>.json packs")
    parser.add_argument("--stores", default="stores.json", help="Existing and planned sites file")
    parser.add_argument("--overpass", action="store_true",
                        help="Fetch missing settlements and anchors from OpenStreetMap")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("submit", help="Queue an expansion job")
    p.add_argument("region")
    size = p.add_mutually_exclusive_group()
    size.add_argument("--target", type=int, help="Number of sites wanted")
    size.add_argument("--aggression", type=int, default=20, help="0-100, mapped to a target count")
    p.add_argument("--no-ai", action="store_true", help="Template rationale only")
    p.add_argument("--ai-fraction", type=float)
    p.add_argument("--ai-cap", type=int)
    p.add_argument("--cost-cap", type=float, help="USD ceiling for this job")
    p.add_argument("--model")
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--key", help="Idempotency key")
    p.add_argument("--run", action="store_true", help="Process the job in this process")
    p.set_defaults(handler=_cmd_submit)

    p = sub.add_parser("status", help="Show job status")
    p.add_argument("job_id", type=int)
    p.set_defaults(handler=_cmd_status)

    p = sub.add_parser("result", help="Show or export job results")
    p.add_argument("job_id", type=int)
    p.add_argument("--csv", help="Write suggestions to this CSV file")
    p.set_defaults(handler=_cmd_result)

    p = sub.add_parser("cancel", help="Cancel a job")
    p.add_argument("job_id", type=int)
    p.set_defaults(handler=_cmd_cancel)

    p = sub.add_parser("retry", help="Requeue a failed job")
    p.add_argument("job_id", type=int)
    p.set_defaults(handler=_cmd_retry)

    p = sub.add_parser("recover", help="Requeue stale jobs and delete expired jobs and cache entries")
    p.set_defaults(handler=_cmd_recover)

    p = sub.add_parser("worker", help="Run a background worker")
    p.add_argument("--max-jobs", type=int)
    p.set_defaults(handler=_cmd_worker)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        settings = ExpansionSettings.from_env()
        orchestrator = build_orchestrator(settings, args.regions_dir, args.stores, args.overpass)
        return args.handler(orchestrator, args)
    except (ExpansionError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
