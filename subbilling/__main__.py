"""
Command line entry point.

  python -m subbilling init-db
  python -m subbilling run [--subscription ID | --account ID]
"""
import argparse
import json
import sys

from subbilling.db import init_db
from subbilling.errors import SubscriptionNotFound
from subbilling.logging_config import configure_logging
from subbilling.scheduler import BillingScheduler, BillingTarget, CallerContext


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="subbilling", description="Subscription billing engine")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="create tables in DATABASE_URL")
    run = sub.add_parser("run", help="run a billing cycle")
    target = run.add_mutually_exclusive_group()
    target.add_argument("--subscription", help="charge one subscription now, even if not yet due")
    target.add_argument("--account", help="charge the due subscriptions of one account")
    args = parser.parse_args(argv)

    configure_logging()
    if args.command == "init-db":
        init_db()
        return 0

    try:
        summary = BillingScheduler().run(
            target=BillingTarget(subscription_id=args.subscription, account_id=args.account),
            caller=CallerContext.scheduler(),
        )
    except SubscriptionNotFound as e:
        print(str(e), file=sys.stderr)
        return 2
    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
