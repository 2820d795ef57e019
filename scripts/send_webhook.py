"""Sign a JSON event with the webhook secret and post it to the intake.

Useful for local duplicate-delivery and bulk-purchase testing without the
processor's CLI.
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path

import httpx


def sign(payload: str, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def main() -> None:
    """Parse CLI args and deliver one signed event (optionally several times)."""

    parser = argparse.ArgumentParser(description="Post a signed webhook event.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON event")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON event file")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")
    event = json.loads(args.json_inline) if args.json_inline else json.loads(Path(args.json_file).read_text())
    payload = json.dumps(event)

    with httpx.Client(timeout=30.0) as client:
        for attempt in range(1, args.repeat + 1):
            resp = client.post(
                f"{args.base_url}/webhook",
                content=payload,
                headers={"content-type": "application/json", "stripe-signature": sign(payload, args.secret, int(time.time()))},
            )
            print(f"delivery={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
