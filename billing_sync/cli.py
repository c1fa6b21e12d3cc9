"""billing-sync command line.

Usage:
    billing-sync serve --port 8000          # HTTP ingress (+ in-process workers)
    billing-sync worker                     # queue consumers only
    billing-sync sweep [--interval 300]     # reconciliation sweep, once or periodically
    billing-sync resync cus_123             # one customer, its subscriptions and invoices
    billing-sync ledger failed [--limit 50] # events that exhausted processing
    billing-sync ledger show evt_123        # one ledger entry

``worker`` and ``sweep`` only make sense against the Redis queue and a
Postgres database (ledger and state store); with the in-memory backends each
process has its own state.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from dataclasses import asdict

from billing_sync.app import build_engine, create_app
from billing_sync.config import get_settings
from billing_sync.errors import BillingSyncError

logger = logging.getLogger(__name__)


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the HTTP app with uvicorn."""
    import uvicorn

    app = create_app(build_engine(get_settings()), run_workers=not args.no_workers)
    uvicorn.run(app, host=args.host, port=args.port, log_level=get_settings().log_level.lower())


def cmd_worker(args: argparse.Namespace) -> None:
    """Consume webhook and notification jobs until interrupted."""
    engine = build_engine(get_settings())
    engine.start_workers()
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        engine.stop_workers()


def cmd_sweep(args: argparse.Namespace) -> None:
    """Retry orphaned syncs and requeue stalled ledger rows."""
    engine = build_engine(get_settings())
    if not args.interval:
        report = engine.sweep.run()
        print(json.dumps(asdict(report), indent=2))
        return
    stop = threading.Event()
    try:
        engine.sweep.run_periodically(args.interval, stop)
    except KeyboardInterrupt:
        stop.set()


def cmd_resync(args: argparse.Namespace) -> None:
    """Pull one customer and everything the provider lists for it."""
    engine = build_engine(get_settings())
    try:
        report = engine.sweep.resync_customer(args.customer_id)
    except BillingSyncError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(asdict(report), indent=2))
    if report.errors:
        sys.exit(1)


def cmd_ledger(args: argparse.Namespace) -> None:
    """Inspect the idempotency ledger."""
    engine = build_engine(get_settings())
    if args.action == "failed":
        entries = engine.ledger.list_failed(args.limit)
        for e in entries:
            print(f"{e.external_event_id:32s}  {e.event_type:40s}  retries={e.retry_count}  {e.error or ''}")
        print(f"{len(entries)} failed event(s)")
        return

    if not args.event_id:
        print("ERROR: ledger show needs an event id", file=sys.stderr)
        sys.exit(2)
    entry = engine.ledger.find_by_external_id(args.event_id)
    if entry is None:
        print(f"ERROR: no ledger entry for {args.event_id}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(asdict(entry), indent=2, default=str))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="billing-sync",
        description="Webhook-driven billing state reconciliation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP webhook receiver")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--no-workers", action="store_true", help="Do not consume jobs in-process")
    p_serve.set_defaults(func=cmd_serve)

    p_worker = sub.add_parser("worker", help="Run queue consumers")
    p_worker.set_defaults(func=cmd_worker)

    p_sweep = sub.add_parser("sweep", help="Run the reconciliation sweep")
    p_sweep.add_argument("--interval", type=float, default=0, help="Repeat every N seconds")
    p_sweep.set_defaults(func=cmd_sweep)

    p_resync = sub.add_parser("resync", help="Resync one customer from the provider")
    p_resync.add_argument("customer_id")
    p_resync.set_defaults(func=cmd_resync)

    p_ledger = sub.add_parser("ledger", help="Inspect ledger entries")
    p_ledger.add_argument("action", choices=["failed", "show"])
    p_ledger.add_argument("event_id", nargs="?")
    p_ledger.add_argument("--limit", type=int, default=50)
    p_ledger.set_defaults(func=cmd_ledger)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
