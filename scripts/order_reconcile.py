"""Report (and optionally repair) orders that do not mirror their settled payment."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for order reconciliation checks."""

    parser = argparse.ArgumentParser(description="List or repair orders out of sync with their payment.")
    parser.add_argument("--payments-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--repair", action="store_true", help="Re-apply the order update for every mismatch")
    args = parser.parse_args()

    headers = {"X-Api-Key": args.api_key}
    if args.repair:
        resp = httpx.post(
            f"{args.payments_url}/reconciliation/orders/repair",
            params={"limit": args.limit},
            headers=headers,
            timeout=30.0,
        )
    else:
        resp = httpx.get(
            f"{args.payments_url}/reconciliation/orders",
            params={"limit": args.limit},
            headers=headers,
            timeout=10.0,
        )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
