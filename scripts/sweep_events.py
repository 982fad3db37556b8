#!/usr/bin/env python3
"""
Run the webhook recovery sweep once.

Re-drives events that were received but never settled, deferred events
and events scheduled for retry. Configuration is read from the same
environment variables as the API.

Usage:
    python scripts/sweep_events.py --limit 50
    python scripts/sweep_events.py --dead-letters
"""

import argparse
import sys

from payrecon.utils.logging import configure_logging, set_correlation_id
from payrecon_api.dependencies import get_event_store, get_webhook_handler


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-drive due webhook events")
    parser.add_argument("--limit", type=int, default=25, help="Max events to process")
    parser.add_argument(
        "--dead-letters",
        action="store_true",
        help="List dead-lettered events instead of sweeping",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    configure_logging(args.log_level)
    set_correlation_id("sweep-cli")

    if args.dead_letters:
        events = get_event_store().list_dead_letters()
        for event in events:
            print(
                f"{event.event_id}\t{event.event_type}\tattempts={event.attempts}\t"
                f"{event.reason or event.last_error or ''}"
            )
        print(f"{len(events)} dead-lettered event(s)")
        return 0

    results = get_webhook_handler().sweep(args.limit)
    for result in results:
        outcome = result.outcome.value if result.outcome else "retry"
        print(f"{result.event_id}\t{result.event_type}\t{outcome}\t{result.reason or ''}")
    print(f"Processed {len(results)} event(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
