"""Trigger one reconciliation sweep over all in-flight DC purchase orders.

Intended for cron: the API re-drives every order that is not yet complete and
returns a summary.
"""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for scheduled reconciliation."""

    parser = argparse.ArgumentParser(description="Re-drive every non-terminal DC purchase order.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--timeout", type=float, default=600.0)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/dc-purchase/admin/reconcile",
        headers={"x-api-key": args.api_key},
        timeout=args.timeout,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
