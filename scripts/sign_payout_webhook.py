#!/usr/bin/env python3
"""
Payout Webhook Signing Helper

Computes hashed_order for a withdrawal id, or posts a signed form-encoded
withdrawal callback to a running API (useful against staging).

hashed_order = HMAC_SHA256_HEX(OPENNODE_API_KEY, withdrawal_id)
"""

import argparse
import hashlib
import hmac
import os
import sys

import httpx
import structlog

logger = structlog.get_logger()

WEBHOOK_PATH = "/v1/webhooks/opennode/withdrawals"


def sign(api_key: str, withdrawal_id: str) -> str:
    """HMAC-SHA256 hex over the withdrawal id."""
    return hmac.new(
        api_key.encode("utf-8"), withdrawal_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def send(
    api_base_url: str,
    api_key: str,
    withdrawal_id: str,
    status: str,
    error: str | None = None,
    fee: str | None = None,
) -> httpx.Response:
    """POST a signed withdrawal callback."""
    form = {
        "id": withdrawal_id,
        "status": status,
        "type": "withdrawal",
        "hashed_order": sign(api_key, withdrawal_id),
    }
    if error:
        form["error"] = error
    if fee:
        form["fee"] = fee

    url = api_base_url.rstrip("/") + WEBHOOK_PATH
    with httpx.Client(timeout=10.0) as client:
        response = client.post(url, data=form)

    logger.info(
        "payout_webhook_sent",
        url=url,
        withdrawal_id=withdrawal_id,
        status=status,
        status_code=response.status_code,
    )
    return response


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sign or send OpenNode withdrawal webhooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print hashed_order for a withdrawal
  OPENNODE_API_KEY=... python3 sign_payout_webhook.py hash wd_123

  # Post a signed confirmation to a local API
  OPENNODE_API_KEY=... python3 sign_payout_webhook.py send http://localhost:8000 wd_123

  # Post a signed failure
  OPENNODE_API_KEY=... python3 sign_payout_webhook.py send http://localhost:8000 wd_123 \\
      --status failed --error "route not found"
        """,
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    hash_cmd = subcommands.add_parser("hash", help="Print hashed_order for a withdrawal id")
    hash_cmd.add_argument("withdrawal_id")

    send_cmd = subcommands.add_parser("send", help="Post a signed callback")
    send_cmd.add_argument("api_base_url")
    send_cmd.add_argument("withdrawal_id")
    send_cmd.add_argument(
        "--status", default="confirmed", help="confirmed | failed | error | anything else"
    )
    send_cmd.add_argument("--error", help="Error message for failed/error statuses")
    send_cmd.add_argument("--fee", help="Reported fee")

    args = parser.parse_args()

    api_key = os.environ.get("OPENNODE_API_KEY", "").strip()
    if not api_key:
        print("OPENNODE_API_KEY is required", file=sys.stderr)
        sys.exit(1)

    withdrawal_id = args.withdrawal_id.strip()
    if not withdrawal_id:
        print("withdrawal_id is required", file=sys.stderr)
        sys.exit(1)

    if args.command == "hash":
        print(sign(api_key, withdrawal_id))
        sys.exit(0)

    try:
        response = send(
            args.api_base_url,
            api_key,
            withdrawal_id,
            args.status.strip(),
            error=args.error,
            fee=args.fee,
        )
    except httpx.HTTPError as exc:
        logger.error("payout_webhook_send_failed", error=str(exc))
        sys.exit(1)

    print(f"{response.status_code} {response.text}")
    sys.exit(0 if response.is_success else 1)


if __name__ == "__main__":
    main()
