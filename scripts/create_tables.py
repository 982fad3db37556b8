#!/usr/bin/env python3
"""
Create the DynamoDB tables used by the reconciliation engine.

Existing tables are left untouched, so the script can be re-run safely.

Usage:
    python scripts/create_tables.py --env dev --region eu-west-1
    python scripts/create_tables.py --prefix payrecon-local --endpoint-url http://localhost:8000
"""

import argparse
import sys

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from payrecon.services.schema import create_tables
from payrecon.utils.logging import configure_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Create payrecon DynamoDB tables")
    parser.add_argument("--env", default="dev", help="Environment name (default: dev)")
    parser.add_argument("--prefix", help="Table prefix (default: payrecon-{env})")
    parser.add_argument("--region", default="eu-west-1", help="AWS region")
    parser.add_argument("--endpoint-url", help="DynamoDB endpoint, e.g. DynamoDB Local")
    args = parser.parse_args()

    configure_logging()
    prefix = args.prefix or f"payrecon-{args.env}"
    client = boto3.client("dynamodb", region_name=args.region, endpoint_url=args.endpoint_url)

    try:
        created = create_tables(client, prefix)
    except (BotoCoreError, ClientError) as e:
        print(f"Failed to create tables: {e}", file=sys.stderr)
        return 1

    if created:
        print(f"Created {len(created)} table(s):")
        for name in created:
            print(f"  - {name}")
    else:
        print(f"All tables with prefix '{prefix}' already exist")
    return 0


if __name__ == "__main__":
    sys.exit(main())
