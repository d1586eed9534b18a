#!/usr/bin/env python3
"""
Issue a campaign token for upload sessions.

The PSK is looked up by key id in the same SSM parameter the Lambda reads
(COLLECT_PSK_PARAMETER, or --psk-parameter). Run from the repository root:

  python3 services/upload-sessions/sign_token.py KEY_ID CAMPAIGN EXPIRES_IN [--psk-parameter NAME] [--region REGION]

EXPIRES_IN is the token lifetime in seconds. The token is printed to stdout.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

from botocore.exceptions import BotoCoreError, ClientError

from capability_tokens import ServiceConfig, ServiceContext, issue_campaign_token, resolve_psk

EXIT_SUCCESS = 0
EXIT_VALIDATION = 1
EXIT_AWS = 2
EXIT_NOT_FOUND = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a PSK-signed campaign token")
    parser.add_argument("key_id", help="PSK key id")
    parser.add_argument("campaign", help="Campaign label (becomes the top-level upload prefix)")
    parser.add_argument("expires_in", type=int, help="Token lifetime in seconds")
    parser.add_argument("--psk-parameter", help="SSM parameter holding the PSK records")
    parser.add_argument("--region", help="AWS region of the SSM parameter")
    return parser


def main(argv: list[str] | None = None, ctx: ServiceContext | None = None) -> int:
    args = build_parser().parse_args(argv)
    key_id = args.key_id.strip()
    campaign = args.campaign.strip()

    if not key_id or ":" in key_id:
        print("Error: key_id must be non-empty and must not contain ':'.", file=sys.stderr)
        return EXIT_VALIDATION
    if not campaign:
        print("Error: campaign must be non-empty.", file=sys.stderr)
        return EXIT_VALIDATION
    if args.expires_in <= 0:
        print("Error: expires_in must be a positive number of seconds.", file=sys.stderr)
        return EXIT_VALIDATION

    if ctx is None:
        config = ServiceConfig.from_env()
        if args.psk_parameter:
            config = replace(config, psk_parameter=args.psk_parameter)
        if args.region:
            config = replace(config, region=args.region)
        ctx = ServiceContext(config=config)

    try:
        psk = resolve_psk(ctx, key_id)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_VALIDATION
    except (BotoCoreError, ClientError) as exc:
        print(f"Error: unable to read PSK parameter: {exc}", file=sys.stderr)
        return EXIT_AWS

    if psk is None:
        print(f"Error: PSK not found for key id {key_id}", file=sys.stderr)
        return EXIT_NOT_FOUND

    print(issue_campaign_token(psk, key_id, campaign, args.expires_in))
    return EXIT_SUCCESS


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    sys.exit(main())
