import argparse
import json
import logging
import sys

from app.db import SessionLocal, create_all
from app.services.change_control.autopilot import AutopilotRunner
from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.platform import get_store_platform
from app.services.change_control.rollback import RollbackEngine
from app.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("app.cli")


def run_init_db(args) -> int:
    create_all()
    logger.info("[CLI] Tables created")
    return 0


def run_autopilot_tick(args) -> int:
    with SessionLocal() as session:
        summary = AutopilotRunner(session, get_store_platform()).tick(args.merchant, limit=args.limit)
    print(json.dumps(summary.__dict__))
    return 0


def run_bulk_rollback(args) -> int:
    if not args.yes:
        logger.error("[CLI] bulk-rollback reverts every applied change; pass --yes to confirm")
        return 2

    with SessionLocal() as session:
        outcome = RollbackEngine(session, get_store_platform()).bulk_rollback(
            args.merchant, record_ids=args.record_ids or None
        )
    for item in outcome.results:
        if item.success:
            logger.info(f"[CLI] {item.record_id} rolled back (corrective {item.corrective_id})")
        else:
            logger.warning(f"[CLI] {item.record_id} failed: {item.error}")
    print(json.dumps({"total": outcome.total, "succeeded": outcome.succeeded, "failed": outcome.failed}))
    return 0 if outcome.failed == 0 else 1


def run_show_settings(args) -> int:
    with SessionLocal() as session:
        service = AutomationSettingsService(session)
        conf = service.get(args.merchant)
        usage = service.usage(args.merchant)
    print(json.dumps({
        "merchant_id": conf.merchant_id,
        "global_autopilot_enabled": conf.global_autopilot_enabled,
        "autopilot_enabled": conf.autopilot_enabled,
        "autopilot_mode": conf.autopilot_mode,
        "dry_run_mode": conf.dry_run_mode,
        "auto_publish_enabled": conf.auto_publish_enabled,
        "max_daily_actions": conf.max_daily_actions,
        "enabled_action_types": conf.enabled_action_types,
        "used_today": usage["used"],
    }, indent=2))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="ZYRA Change Control CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create tables without Alembic (local development)")

    tick_parser = subparsers.add_parser("autopilot-tick", help="Auto-execute pending agent proposals allowed by policy")
    tick_parser.add_argument("--merchant", default=settings.default_merchant_id)
    tick_parser.add_argument("--limit", type=int, default=None)

    rollback_parser = subparsers.add_parser("bulk-rollback", help="Roll back applied changes of a merchant")
    rollback_parser.add_argument("--merchant", default=settings.default_merchant_id)
    rollback_parser.add_argument("--record-id", dest="record_ids", action="append", help="Limit to these records (repeatable)")
    rollback_parser.add_argument("--yes", action="store_true", help="Confirm the rollback")

    show_parser = subparsers.add_parser("show-settings", help="Print automation settings and today's usage")
    show_parser.add_argument("--merchant", default=settings.default_merchant_id)

    args = parser.parse_args(argv)

    handlers = {
        "init-db": run_init_db,
        "autopilot-tick": run_autopilot_tick,
        "bulk-rollback": run_bulk_rollback,
        "show-settings": run_show_settings,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
