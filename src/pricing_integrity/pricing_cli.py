from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .audit.purchase_receipts import PurchaseReceiptLog
from .credentials.keys import load_keys
from .errors import PricingIntegrityError
from .service import PricingIntegrityService, build_service
from .settings import settings


def _emit(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_plans(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    _emit([p.model_dump(mode="json") for p in svc.get_validated_plans()])
    return 0


def cmd_validate(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    result = svc.validate(args.plan_id, args.amount, args.currency, billing_cycle=args.billing_cycle)
    _emit(result.model_dump(mode="json"))
    return 0 if result.is_valid else 1


def cmd_refresh(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    _emit(svc.refresh_cache().model_dump(mode="json"))
    return 0


def cmd_cache_stats(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    _emit(svc.get_cache_statistics().model_dump(mode="json"))
    return 0


def cmd_tamper_stats(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    stats = svc.get_tampering_statistics(
        args.timeframe,
        since_ms=args.since_ms,
        until_ms=args.until_ms,
        top_n=args.top,
    )
    _emit(stats.model_dump(mode="json"))
    return 0


def cmd_cleanup(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    _emit({"deleted": svc.cleanup(args.days)})
    return 0


def cmd_replay_spool(svc: PricingIntegrityService, args: argparse.Namespace) -> int:
    _emit({"replayed": svc.replay_spool()})
    return 0


def cmd_verify_receipts(args: argparse.Namespace) -> int:
    data = settings.pricing_data_dir
    receipts_dir = Path(args.dir) if args.dir else data / "receipts"
    if not receipts_dir.exists():
        print(f"Receipts directory not found: {receipts_dir}", file=sys.stderr)
        return 2
    sk, vk = load_keys(data / "keys", settings.signing_key_b64)
    report = PurchaseReceiptLog(receipts_dir, sk, vk).verify_chain()
    _emit(report)
    return 0 if report["ok"] else 4


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pricing_cli",
        description="Pricing integrity operator utilities",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("plans", help="List validated plans").set_defaults(func=cmd_plans)

    p_val = sub.add_parser("validate", help="Validate a price quote")
    p_val.add_argument("plan_id")
    p_val.add_argument("amount", type=float)
    p_val.add_argument("--currency", default="INR")
    p_val.add_argument("--billing-cycle", choices=["monthly", "yearly"])
    p_val.set_defaults(func=cmd_validate)

    sub.add_parser("refresh", help="Rebuild and publish the catalog cache").set_defaults(func=cmd_refresh)
    sub.add_parser("cache-stats", help="Show catalog cache statistics").set_defaults(func=cmd_cache_stats)

    p_stats = sub.add_parser("tamper-stats", help="Aggregate tampering events")
    p_stats.add_argument("--timeframe", choices=["hour", "day", "week"], default="day")
    p_stats.add_argument("--since-ms", type=int, help="Explicit window start (epoch ms)")
    p_stats.add_argument("--until-ms", type=int, help="Explicit window end, exclusive (epoch ms)")
    p_stats.add_argument("--top", type=int, default=None, help="Number of targeted plans to list")
    p_stats.set_defaults(func=cmd_tamper_stats)

    p_clean = sub.add_parser("cleanup", help="Delete tampering events past retention")
    p_clean.add_argument("--days", type=int, default=None, help="Retention in days (default from settings)")
    p_clean.set_defaults(func=cmd_cleanup)

    sub.add_parser("replay-spool", help="Move spooled tampering events into the store").set_defaults(
        func=cmd_replay_spool
    )

    p_verify = sub.add_parser("verify-receipts", help="Verify the purchase receipt chain")
    p_verify.add_argument("--dir", help="Receipts directory (default: <data>/receipts)")
    p_verify.set_defaults(func=cmd_verify_receipts, standalone=True)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if getattr(args, "standalone", False):
        return args.func(args)
    svc = build_service(settings)
    try:
        return args.func(svc, args)
    except (PricingIntegrityError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 3
    finally:
        svc.stop()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
