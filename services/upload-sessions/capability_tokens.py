"""
Capability tokens for upload sessions.

Two PSK-signed token formats:
- Campaign token (long-lived): `version:key_id:signature:expiry:campaign`,
  signature = HMAC-SHA384(psk, "{expiry}:{campaign}").
- Continuation handler (short-lived): `version:signature:expiry:session_prefix`,
  signature = HMAC-SHA384(psk, "{expiry}:{session_prefix}") keyed by the
  campaign token's key id.

PSKs are stored together in one SSM SecureString parameter, one
`{key_id}:{base64-secret}` record per line.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import boto3

logger = logging.getLogger(__name__)

TOKEN_VERSION = "1"
US_EAST_1_REGION = "us-" + "east-1"

DEFAULT_CREDENTIAL_DURATION_SECONDS = 3600
DEFAULT_REFRESH_AFTER_SECONDS = 3500
DEFAULT_CONTINUATION_TTL_SECONDS = 3600

CLIENT_ROLE_ARN_ENV = "COLLECT_CLIENT_ROLE_ARN"
FILES_BUCKET_ENV = "COLLECT_FILES_BUCKET"
PSK_PARAMETER_ENV = "COLLECT_PSK_PARAMETER"
SLACK_WEBHOOK_URL_ENV = "COLLECT_SLACK_WEBHOOK_URL"
CREDENTIAL_DURATION_ENV = "COLLECT_CREDENTIAL_DURATION_SECONDS"
REFRESH_AFTER_ENV = "COLLECT_REFRESH_AFTER_SECONDS"
CONTINUATION_TTL_ENV = "COLLECT_CONTINUATION_TTL_SECONDS"


class SecretNotFoundError(LookupError):
    """Raised when a PSK must exist but cannot be resolved."""


class InvalidTokenError(ValueError):
    """Raised inside verification; never escapes the verify_* functions."""


@dataclass(frozen=True)
class ParseIncomplete:
    reason: str


@dataclass(frozen=True)
class CampaignToken:
    version: str
    key_id: str
    signature: str
    expiry: str
    campaign: str

    @property
    def signature_payload(self) -> str:
        return f"{self.expiry}:{self.campaign}"

    def serialize(self) -> str:
        return f"{self.version}:{self.key_id}:{self.signature}:{self.expiry}:{self.campaign}"


@dataclass(frozen=True)
class ContinuationHandler:
    version: str
    signature: str
    expiry: str
    session_prefix: str

    @property
    def signature_payload(self) -> str:
        return f"{self.expiry}:{self.session_prefix}"

    def serialize(self) -> str:
        return f"{self.version}:{self.signature}:{self.expiry}:{self.session_prefix}"


@dataclass(frozen=True)
class VerifiedCampaign:
    key_id: str
    campaign: str


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return parsed


def _optional_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class ServiceConfig:
    region: str
    client_role_arn: str | None = None
    files_bucket: str | None = None
    psk_parameter: str | None = None
    slack_webhook_url: str | None = None
    credential_duration_seconds: int = DEFAULT_CREDENTIAL_DURATION_SECONDS
    refresh_after_seconds: int = DEFAULT_REFRESH_AFTER_SECONDS
    continuation_ttl_seconds: int = DEFAULT_CONTINUATION_TTL_SECONDS

    def __post_init__(self) -> None:
        # Clients must be told to refresh while both the credential and the handler are still valid.
        if self.refresh_after_seconds >= self.credential_duration_seconds:
            raise RuntimeError("refresh_after_seconds must be lower than credential_duration_seconds")
        if self.refresh_after_seconds >= self.continuation_ttl_seconds:
            raise RuntimeError("refresh_after_seconds must be lower than continuation_ttl_seconds")

    @classmethod
    def from_env(cls) -> ServiceConfig:
        region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or US_EAST_1_REGION
        return cls(
            region=region.strip() or US_EAST_1_REGION,
            client_role_arn=_optional_env(CLIENT_ROLE_ARN_ENV),
            files_bucket=_optional_env(FILES_BUCKET_ENV),
            psk_parameter=_optional_env(PSK_PARAMETER_ENV),
            slack_webhook_url=_optional_env(SLACK_WEBHOOK_URL_ENV),
            credential_duration_seconds=_read_int_env(
                CREDENTIAL_DURATION_ENV, DEFAULT_CREDENTIAL_DURATION_SECONDS, minimum=900
            ),
            refresh_after_seconds=_read_int_env(REFRESH_AFTER_ENV, DEFAULT_REFRESH_AFTER_SECONDS),
            continuation_ttl_seconds=_read_int_env(CONTINUATION_TTL_ENV, DEFAULT_CONTINUATION_TTL_SECONDS),
        )

    def require(self, attribute: str, env_name: str) -> str:
        value = getattr(self, attribute)
        if not value:
            raise RuntimeError(f"{env_name} environment variable is required")
        return value


@dataclass
class ServiceContext:
    """Long-lived per-process state shared by every request.

    Holds configuration, lazily created AWS clients and the PSK cache. The
    cache is write-once per key id and never evicted, so rotating a key
    requires a new process.
    """

    config: ServiceConfig
    ssm_client: Any | None = None
    sts_client: Any | None = None
    psk_cache: dict[str, bytes] = field(default_factory=dict)

    def ssm(self) -> Any:
        if self.ssm_client is None:
            self.ssm_client = boto3.client("ssm", region_name=self.config.region)
        return self.ssm_client

    def sts(self) -> Any:
        if self.sts_client is None:
            self.sts_client = boto3.client("sts", region_name=self.config.region)
        return self.sts_client


def _psk_records(ctx: ServiceContext) -> str:
    parameter_name = ctx.config.require("psk_parameter", PSK_PARAMETER_ENV)
    response = ctx.ssm().get_parameter(Name=parameter_name, WithDecryption=True)
    return str(response.get("Parameter", {}).get("Value") or "")


def resolve_psk(ctx: ServiceContext, key_id: str) -> bytes | None:
    cached = ctx.psk_cache.get(key_id)
    if cached is not None:
        return cached
    if not key_id:
        return None

    record_prefix = f"{key_id}:"
    for line in _psk_records(ctx).splitlines():
        if not line.startswith(record_prefix):
            continue
        try:
            secret = base64.b64decode(line[len(record_prefix):].strip(), validate=True)
        except (binascii.Error, ValueError):
            logger.warning("PSK record for key id %r is not valid base64", key_id)
            return None
        if not secret:
            logger.warning("PSK record for key id %r is empty", key_id)
            return None
        ctx.psk_cache[key_id] = secret
        return secret

    logger.warning("PSK key id %r not found", key_id)
    return None


def sign_payload(secret: bytes, payload: str) -> str:
    return hmac.new(secret, payload.encode("utf-8"), hashlib.sha384).hexdigest()


def secure_compare(expected: str, actual: str) -> bool:
    """Compare two strings in time independent of where they first differ.

    Lengths are not secret, so a length mismatch returns early.
    """
    left = expected.encode("utf-8")
    right = actual.encode("utf-8")
    if len(left) != len(right):
        return False

    result = 0
    for x, y in zip(left, right):
        result |= x ^ y
    return result == 0


def parse_campaign_token(raw: Any) -> CampaignToken | ParseIncomplete:
    if not isinstance(raw, str) or not raw:
        return ParseIncomplete("token is missing")
    fields = raw.split(":", 4)
    if len(fields) < 5 or not all(fields):
        return ParseIncomplete("token is incomplete")
    return CampaignToken(*fields)


def parse_continuation_handler(raw: Any) -> ContinuationHandler | ParseIncomplete:
    if not isinstance(raw, str) or not raw:
        return ParseIncomplete("continuation handler is missing")
    fields = raw.split(":", 3)
    if len(fields) < 4 or not all(fields):
        return ParseIncomplete("continuation handler is incomplete")
    return ContinuationHandler(*fields)


def _is_expired(expiry: str, now: int) -> bool:
    # int() would also accept whitespace, underscores, signs and non-ASCII digits
    if not (expiry.isascii() and expiry.isdigit()):
        return True
    return now > int(expiry)


def _check_signed(ctx: ServiceContext, key_id: str, expiry: str, payload: str, signature: str, now: int) -> None:
    psk = resolve_psk(ctx, key_id)
    if psk is None:
        raise InvalidTokenError("unknown key id")
    if _is_expired(expiry, now):
        raise InvalidTokenError("expired")
    try:
        matches = secure_compare(sign_payload(psk, payload), signature)
    except UnicodeEncodeError as exc:
        raise InvalidTokenError("not encodable as UTF-8") from exc
    if not matches:
        raise InvalidTokenError("signature mismatch")


def verify_campaign_token(ctx: ServiceContext, raw: Any, now: int | None = None) -> VerifiedCampaign | None:
    now = int(time.time()) if now is None else now
    parsed = parse_campaign_token(raw)
    try:
        if isinstance(parsed, ParseIncomplete):
            raise InvalidTokenError(parsed.reason)
        _check_signed(ctx, parsed.key_id, parsed.expiry, parsed.signature_payload, parsed.signature, now)
    except InvalidTokenError as exc:
        logger.info("Rejected campaign token: %s", exc)
        return None
    return VerifiedCampaign(key_id=parsed.key_id, campaign=parsed.campaign)


def verify_continuation_handler(ctx: ServiceContext, key_id: str, raw: Any, now: int | None = None) -> str | None:
    now = int(time.time()) if now is None else now
    parsed = parse_continuation_handler(raw)
    try:
        if isinstance(parsed, ParseIncomplete):
            raise InvalidTokenError(parsed.reason)
        _check_signed(ctx, key_id, parsed.expiry, parsed.signature_payload, parsed.signature, now)
    except InvalidTokenError as exc:
        logger.info("Rejected continuation handler: %s", exc)
        return None
    return parsed.session_prefix


def issue_campaign_token(psk: bytes, key_id: str, campaign: str, expires_in: int, now: int | None = None) -> str:
    now = int(time.time()) if now is None else now
    expiry = str(now + expires_in)
    unsigned = CampaignToken(TOKEN_VERSION, key_id, "", expiry, campaign)
    signature = sign_payload(psk, unsigned.signature_payload)
    return CampaignToken(TOKEN_VERSION, key_id, signature, expiry, campaign).serialize()


def mint_continuation_handler(
    ctx: ServiceContext,
    key_id: str,
    session_prefix: str,
    ttl: int | None = None,
    now: int | None = None,
) -> str:
    psk = resolve_psk(ctx, key_id)
    if psk is None:
        raise SecretNotFoundError(f"PSK for key id {key_id!r} is not available")

    now = int(time.time()) if now is None else now
    ttl = ctx.config.continuation_ttl_seconds if ttl is None else ttl
    expiry = str(now + ttl)
    unsigned = ContinuationHandler(TOKEN_VERSION, "", expiry, session_prefix)
    signature = sign_payload(psk, unsigned.signature_payload)
    return ContinuationHandler(TOKEN_VERSION, signature, expiry, session_prefix).serialize()
