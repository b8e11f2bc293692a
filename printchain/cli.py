from __future__ import annotations

import argparse
import logging
from pathlib import Path

from printchain.config import settings
from printchain.db import SessionLocal, engine
from printchain.logging_setup import configure_logging
from printchain.models import Base
from printchain.seed_example import seed
from printchain.services.sync_audit_service import AuditScope, report_to_csv, run_audit
from printchain.services.task_queue_service import WorkerPool
from printchain.workers import build_handlers

logger = logging.getLogger(__name__)


def audit_command(args: argparse.Namespace) -> int:
    scope = AuditScope(job_nos=tuple(args.job_no)) if args.job_no else None
    with SessionLocal() as db:
        result = run_audit(db, fix=args.fix, actor=args.actor, scope=scope)
        db.commit()

    report = result.report
    csv_path = args.csv or settings.sync_report_path
    if csv_path:
        Path(csv_path).write_text(report_to_csv(report), encoding='utf-8')
        print(f'Report written to {csv_path}')

    print(
        f'PO/invoice sync audit: pairs={report.pair_count}, mismatches={report.mismatch_count}, '
        f'in_sync={report.percent_in_sync}%, job_drift={len(report.job_drift)}'
    )
    for mismatch in report.mismatches:
        print(
            f'  {mismatch.job_no}: PO {mismatch.purchase_order_id} vendor={mismatch.po_amount} '
            f'invoice {mismatch.invoice_id} amount={mismatch.invoice_amount} diff={mismatch.difference}'
        )
    if args.fix:
        print(f'Repair: repaired={result.repaired}, skipped={result.skipped}, failed={result.failed}')
    return 0


def worker_command(args: argparse.Namespace) -> int:
    pool = WorkerPool(session_factory=SessionLocal, handlers=build_handlers())
    try:
        if args.once:
            processed = pool.run_once()
            print(f'Worker pass complete: processed={processed}')
        else:
            pool.run_forever()
    except KeyboardInterrupt:
        logger.info('worker.interrupted')
    finally:
        pool.shutdown()
    return 0


def init_db_command(_: argparse.Namespace) -> int:
    Base.metadata.create_all(bind=engine)
    print('Schema created.')
    return 0


def seed_command(_: argparse.Namespace) -> int:
    seed()
    print('Seed complete.')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='printchain', description='Print job financial operations.')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL for this run.')
    subparsers = parser.add_subparsers(dest='command', required=True)

    audit_parser = subparsers.add_parser('audit', help='Report PO/invoice drift and optionally repair it.')
    audit_parser.add_argument('--fix', action='store_true', help='Align mismatched invoices with their POs.')
    audit_parser.add_argument('--csv', default=None, help='Write the pair report to this CSV path.')
    audit_parser.add_argument('--job-no', action='append', default=[], help='Limit to a job number (repeatable).')
    audit_parser.add_argument('--actor', default='audit-script', help='Name recorded on correction log rows.')
    audit_parser.set_defaults(handler=audit_command)

    worker_parser = subparsers.add_parser('worker', help='Run queued cascade, invoice, repair and webhook tasks.')
    worker_parser.add_argument('--once', action='store_true', help='Drain due tasks once and exit.')
    worker_parser.set_defaults(handler=worker_command)

    init_parser = subparsers.add_parser('init-db', help='Create database tables.')
    init_parser.set_defaults(handler=init_db_command)

    seed_parser = subparsers.add_parser('seed', help='Insert sample companies and rate card entries.')
    seed_parser.set_defaults(handler=seed_command)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return args.handler(args)


if __name__ == '__main__':
    raise SystemExit(main())
