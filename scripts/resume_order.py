"""Clear a held processing error on one order and run the processor again."""

import argparse
import json
import os

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Resume a DC purchase order stuck with an error.")
    parser.add_argument("order_id")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--timeout", type=float, default=300.0)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/dc-purchase/admin/orders/{args.order_id}/resume",
        headers={"x-api-key": args.api_key},
        timeout=args.timeout,
    )
    if resp.status_code == 404:
        raise SystemExit(f"order not found: {args.order_id}")
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
