#!/usr/bin/env python
"""Run the daily custody jobs (intended for cron).

Usage:
    python backend/scripts/run_jobs.py                   # reconcile tickets + auto-schedule maintenance
    python backend/scripts/run_jobs.py --only reconcile  # one job
    python backend/scripts/run_jobs.py --dry-run         # report what would change
    python backend/scripts/run_jobs.py --limit 500       # tickets read per reconciliation page

Exit status is 1 when any item errored.
"""
from __future__ import annotations
import os, sys, argparse, json, logging

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from custody import create_app  # type: ignore
from custody.services import reconciliation

JOBS = ('reconcile', 'maintenance')


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Run scheduled custody jobs")
    p.add_argument('--only', choices=JOBS, help='Run a single job')
    p.add_argument('--dry-run', action='store_true', help='Compute changes without writing them')
    p.add_argument('--limit', type=int, help='Tickets read per reconciliation page')
    p.add_argument('--lookahead-days', type=int, help='Maintenance look-ahead window')
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'), format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app = create_app()
    with app.app_context():
        if args.only is None:
            out = reconciliation.run_scheduled_jobs(
                dry_run=args.dry_run, limit=args.limit, lookahead_days=args.lookahead_days,
            )
        elif args.only == 'reconcile':
            out = {'reconcile': reconciliation.reconcile_ticket_statuses(limit=args.limit, dry_run=args.dry_run)}
        else:
            out = {'maintenance': reconciliation.auto_schedule_maintenance(
                lookahead_days=args.lookahead_days, dry_run=args.dry_run,
            )}
    print(json.dumps(out, indent=2, sort_keys=True))
    return 1 if any(r.get('errors') for r in out.values()) else 0


if __name__ == '__main__':
    sys.exit(main())
