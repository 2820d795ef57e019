"""Fetch and print the provisioning queue status of one purchase."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for queue checks."""

    parser = argparse.ArgumentParser(description="Fetch the queue-status endpoint for a purchase reference.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--reference", required=True, help="Event id of the purchase")
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key} if args.api_key else {}
    resp = httpx.get(
        f"{args.base_url}/queue-status",
        params={"reference": args.reference},
        headers=headers,
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
