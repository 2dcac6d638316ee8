# src/milkround/main.py

import argparse
import json
import logging
import sys
from typing import List, Optional

from milkround import service
from milkround.config import load_config
from milkround.data import Database
from milkround.errors import MilkroundError


def _bool_flag(value: str) -> bool:
    if value.lower() in ('1', 'true', 'yes', 'on'):
        return True
    if value.lower() in ('0', 'false', 'no', 'off'):
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def _month_args(parser: argparse.ArgumentParser):
    parser.add_argument('customer_id', type=int)
    parser.add_argument('year', type=int)
    parser.add_argument('month', type=int)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='milkround', description='Delivery calendar and billing tools.')
    parser.add_argument('--db', dest='db_path', default=None, help='sqlite file (default from config)')
    parser.add_argument('--config', default=None, help='config JSON (default ~/.milkround)')
    sub = parser.add_subparsers(dest='command', required=True)

    _month_args(sub.add_parser('calendar', help='resolved delivery calendar of a month'))

    p = sub.add_parser('preview', help='invoice preview without confirming')
    _month_args(p)
    p.add_argument('--rounding', type=_bool_flag, default=None)

    _month_args(sub.add_parser('summary', help='accounts receivable carryover summary'))

    p = sub.add_parser('confirm', help='confirm the invoice of a month')
    _month_args(p)
    p.add_argument('--rounding', type=_bool_flag, default=None)

    _month_args(sub.add_parser('unconfirm', help='reopen a confirmed month'))

    p = sub.add_parser('undo', help='undo the last temporary change of a customer')
    p.add_argument('customer_id', type=int)

    p = sub.add_parser('master-undo', help='undo the last master data change')
    p.add_argument('entity_type')
    p.add_argument('entity_id', type=int, nargs='?', default=None)

    p = sub.add_parser('pay', help='record a payment')
    _month_args(p)
    p.add_argument('amount', type=int)
    p.add_argument('--method', default='collection', choices=['collection', 'debit'])
    p.add_argument('--note', default=None)
    return parser


def dispatch(db: Database, args: argparse.Namespace) -> dict:
    cmd = args.command
    if cmd == 'calendar':
        return service.get_calendar(db, args.customer_id, args.year, args.month)
    if cmd == 'preview':
        return service.preview_invoice(db, args.customer_id, args.year, args.month, args.rounding)
    if cmd == 'summary':
        return service.get_ar_summary(db, args.customer_id, args.year, args.month)
    if cmd == 'confirm':
        return service.confirm_invoice(db, args.customer_id, args.year, args.month, args.rounding)
    if cmd == 'unconfirm':
        return service.unconfirm_invoice(db, args.customer_id, args.year, args.month)
    if cmd == 'undo':
        return service.undo_customer(db, args.customer_id)
    if cmd == 'master-undo':
        return service.undo_master(db, args.entity_type, args.entity_id)
    if cmd == 'pay':
        return service.record_payment(db, args.customer_id, year=args.year, month=args.month,
                                      amount=args.amount, method=args.method, note=args.note)
    raise ValueError(f"unknown command {cmd!r}")


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, str(cfg.get('log_level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(message)s',
    )
    db = Database(args.db_path, cfg)
    try:
        result = dispatch(db, args)
    except MilkroundError as e:
        logging.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(run())
