"""Sign and deliver a Razorpay-style webhook to a running payments service.

Useful for manual reconciliation, duplicate-delivery and out-of-order testing.
"""

import argparse
import json
from pathlib import Path

import httpx

from gstpay.common.signing import hmac_sha256_hex


def send(url: str, secret: str, raw_body: bytes, event_id: str | None) -> httpx.Response:
    """POST the exact bytes that were signed."""

    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Razorpay-Signature"] = hmac_sha256_hex(secret, raw_body)
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return httpx.post(url, content=raw_body, headers=headers, timeout=10.0)


def main() -> None:
    """Parse CLI args and deliver one signed webhook."""

    parser = argparse.ArgumentParser(description="Deliver a signed gateway webhook.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/razorpay")
    parser.add_argument("--secret", default="", help="Webhook secret; omit to send unsigned")
    parser.add_argument("--event-id", default=None, help="Value for X-Razorpay-Event-Id")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())

    resp = send(args.url, args.secret, json.dumps(payload).encode("utf-8"), args.event_id)
    print(f"status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
