#!/usr/bin/env python3
"""
Create a deal, optionally with milestones, for local testing.

Usage:
    python scripts/seed_deal.py deal-1
    python scripts/seed_deal.py deal-2 --milestone m1:10000:Design --milestone m2:20000:Build
"""

import argparse
import sys

from payrecon.models.deal import MAX_MILESTONES, Milestone
from payrecon.utils.logging import configure_logging
from payrecon_api.dependencies import get_deal_reconciler


def parse_milestone(value: str) -> Milestone:
    """Parse ``id:amount[:description]``."""
    parts = value.split(":", 2)
    if len(parts) < 2:
        raise argparse.ArgumentTypeError("milestones are given as id:amount[:description]")
    try:
        amount = int(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid amount in {value!r}") from None
    return Milestone(
        milestone_id=parts[0],
        amount=amount,
        description=parts[2] if len(parts) == 3 else "",
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a payrecon deal")
    parser.add_argument("deal_id")
    parser.add_argument("--milestone", action="append", type=parse_milestone, default=[])
    args = parser.parse_args()

    if len(args.milestone) > MAX_MILESTONES:
        print(f"A deal has at most {MAX_MILESTONES} milestones", file=sys.stderr)
        return 1

    configure_logging()
    deal = get_deal_reconciler().create_deal(args.deal_id, args.milestone)
    print(
        f"Deal {deal.deal_id}: status={deal.status.value} "
        f"payment_status={deal.payment_status.value} version={deal.version} "
        f"milestones={len(deal.milestones)}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
