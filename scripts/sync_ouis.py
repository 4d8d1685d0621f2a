"""Refresh the OUI directory from the Helium entities registry."""

import argparse
import json
import os

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync the OUI directory used for beneficiary lookup.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/dc-purchase/admin/ouis/sync",
        headers={"x-api-key": args.api_key},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
