"""
Lambda handler for POST /sessions and POST /complete.

POST /sessions flow:
1. Validate `name` and verify the campaign `token`.
2. Reuse the session prefix from a valid `continuation_handler`, or derive a
   fresh one from the request time and request id.
3. Assume the client role with an inline policy scoped to
   `{bucket}/{campaign}/{name}/{session_prefix}/*` (write-only).
4. Return the temporary credentials plus a new continuation handler for
   refreshing them later.

POST /complete flow:
1. Validate `name`, the campaign `token` and the (required) `continuation_handler`.
2. Post a completion message with an S3 console link to the Slack webhook.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote_plus

import requests

from capability_tokens import (
    CLIENT_ROLE_ARN_ENV,
    FILES_BUCKET_ENV,
    SLACK_WEBHOOK_URL_ENV,
    ServiceConfig,
    ServiceContext,
    VerifiedCampaign,
    mint_continuation_handler,
    verify_campaign_token,
    verify_continuation_handler,
)

logger = logging.getLogger(__name__)
_log_level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
logger.setLevel(_log_level if isinstance(_log_level, int) else logging.INFO)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]{1,20}$")
ROLE_SESSION_NAME_DISALLOWED = re.compile(r"[^a-zA-Z0-9+=,.@_-]")
ROLE_SESSION_NAME_MAX_LEN = 64
SESSION_ACTIONS = ("s3:PutObject", "s3:AbortMultipartUpload")
S3_CONSOLE_BUCKET_URL = "https://s3.console.aws.amazon.com/s3/buckets/"
WEBHOOK_TIMEOUT_SECONDS = 10

ROUTE_SESSIONS = "POST /sessions"
ROUTE_COMPLETE = "POST /complete"

INVALID_TOKEN_MESSAGE = "token is invalid; likely mistyped or expired"
INVALID_CONTINUATION_MESSAGE = "invalid continuation_handler"

_SERVICE_CONTEXT: ServiceContext | None = None


class BadRequestError(ValueError):
    """Raised when request validation fails."""


class ForbiddenError(ValueError):
    """Raised when the campaign token does not verify."""


class NotFoundError(ValueError):
    """Raised for unknown routes."""


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "isBase64Encoded": False,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(body, default=str),
    }


def _error_response(status_code: int, error: str, message: str) -> dict[str, Any]:
    return _response(status_code, {"error": error, "message": message})


def service_context() -> ServiceContext:
    global _SERVICE_CONTEXT
    if _SERVICE_CONTEXT is None:
        _SERVICE_CONTEXT = ServiceContext(config=ServiceConfig.from_env())
    return _SERVICE_CONTEXT


def _decode_event_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        raise BadRequestError("Payload has an invalid JSON")

    if event.get("isBase64Encoded"):
        try:
            raw_body = base64.b64decode(raw_body).decode("utf-8")
        except Exception as exc:
            raise BadRequestError("Payload has an invalid JSON") from exc

    try:
        decoded = json.loads(raw_body)
    except (json.JSONDecodeError, TypeError) as exc:
        raise BadRequestError("Payload has an invalid JSON") from exc

    if not isinstance(decoded, dict):
        raise BadRequestError("Payload has an invalid JSON")
    return decoded


def _request_id(event: dict[str, Any], context: Any) -> str:
    request_id = getattr(context, "aws_request_id", None)
    if not request_id:
        request_context = event.get("requestContext") or {}
        if isinstance(request_context, dict):
            request_id = request_context.get("requestId")
    return str(request_id or uuid.uuid4())


def _request_time(event: dict[str, Any]) -> datetime:
    request_context = event.get("requestContext") or {}
    epoch_ms = request_context.get("timeEpoch") if isinstance(request_context, dict) else None
    if isinstance(epoch_ms, (int, float)) and not isinstance(epoch_ms, bool):
        return datetime.fromtimestamp(int(epoch_ms) // 1000, tz=timezone.utc)
    return datetime.fromtimestamp(int(time.time()), tz=timezone.utc)


def _validate_name(body: dict[str, Any]) -> str:
    name = body.get("name")
    if name is None or name == "":
        raise BadRequestError("name is missing")
    if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
        raise BadRequestError("name has an invalid format")
    return name


def _verify_token(ctx: ServiceContext, body: dict[str, Any]) -> VerifiedCampaign:
    verified = verify_campaign_token(ctx, body.get("token"))
    if verified is None:
        raise ForbiddenError(INVALID_TOKEN_MESSAGE)
    return verified


def _verify_continuation(ctx: ServiceContext, key_id: str, raw_handler: Any) -> str:
    session_prefix = verify_continuation_handler(ctx, key_id, raw_handler)
    if session_prefix is None:
        raise BadRequestError(INVALID_CONTINUATION_MESSAGE)
    return session_prefix


def new_session_prefix(request_time: datetime, request_id: str) -> str:
    timestamp = request_time.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{timestamp}--{request_id}"


def storage_prefix(campaign: str, name: str, session_prefix: str) -> str:
    return f"{campaign}/{name}/{session_prefix}/"


def role_session_name(name: str, request_id: str) -> str:
    candidate = f"{re.sub(r'[_ ]', '-', name)}@{request_id}"
    sanitized = ROLE_SESSION_NAME_DISALLOWED.sub("", candidate)
    return sanitized[:ROLE_SESSION_NAME_MAX_LEN] or "upload-session"


def session_policy(bucket: str, prefix: str) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": list(SESSION_ACTIONS),
                "Resource": f"arn:aws:s3:::{bucket}/{prefix}*",
            }
        ],
    }


def _assume_client_role(ctx: ServiceContext, bucket: str, prefix: str, session_name: str) -> dict[str, Any]:
    response = ctx.sts().assume_role(
        DurationSeconds=ctx.config.credential_duration_seconds,
        RoleArn=ctx.config.require("client_role_arn", CLIENT_ROLE_ARN_ENV),
        RoleSessionName=session_name,
        Policy=json.dumps(session_policy(bucket, prefix)),
    )
    return response["Credentials"]


def start_session(
    ctx: ServiceContext,
    body: dict[str, Any],
    request_id: str,
    request_time: datetime,
) -> dict[str, Any]:
    name = _validate_name(body)
    token = _verify_token(ctx, body)

    raw_handler = body.get("continuation_handler")
    # null, absent and false start a new session; anything else must verify
    if raw_handler is not None and raw_handler is not False:
        session_prefix = _verify_continuation(ctx, token.key_id, raw_handler)
    else:
        session_prefix = new_session_prefix(request_time, request_id)

    bucket = ctx.config.require("files_bucket", FILES_BUCKET_ENV)
    prefix = storage_prefix(token.campaign, name, session_prefix)
    credentials = _assume_client_role(ctx, bucket, prefix, role_session_name(name, request_id))
    logger.info("Issued upload credentials for campaign=%s prefix=%s", token.campaign, prefix)

    return {
        "region": ctx.config.region,
        "bucket": bucket,
        "prefix": prefix,
        "use_accelerated_endpoint": True,
        "refresh_after": ctx.config.refresh_after_seconds,
        "continuation_handler": mint_continuation_handler(ctx, token.key_id, session_prefix),
        "credentials": {
            "access_key_id": credentials["AccessKeyId"],
            "secret_access_key": credentials["SecretAccessKey"],
            "session_token": credentials["SessionToken"],
        },
    }


def s3_console_url(bucket: str, prefix: str) -> str:
    return f"{S3_CONSOLE_BUCKET_URL}{quote_plus(bucket)}/{prefix}"


def notify_completion(ctx: ServiceContext, name: str, campaign: str, prefix: str) -> None:
    webhook_url = ctx.config.require("slack_webhook_url", SLACK_WEBHOOK_URL_ENV)
    bucket = ctx.config.require("files_bucket", FILES_BUCKET_ENV)
    text = f":mailbox: {name} uploaded files to {campaign} (<{s3_console_url(bucket, prefix)}|S3 console>)"
    response = requests.post(
        webhook_url,
        data={"payload": json.dumps({"text": text})},
        timeout=WEBHOOK_TIMEOUT_SECONDS,
    )
    response.raise_for_status()


def complete_session(ctx: ServiceContext, body: dict[str, Any]) -> dict[str, Any]:
    name = _validate_name(body)
    token = _verify_token(ctx, body)
    session_prefix = _verify_continuation(ctx, token.key_id, body.get("continuation_handler"))

    prefix = storage_prefix(token.campaign, name, session_prefix)
    notify_completion(ctx, name, token.campaign, prefix)
    logger.info("Upload session completed for campaign=%s prefix=%s", token.campaign, prefix)
    return {"ok": True}


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    route_key = str(event.get("routeKey") or "")
    request_id = _request_id(event, context)
    logger.info("Handling %s request_id=%s", route_key, request_id)

    try:
        if route_key == ROUTE_SESSIONS:
            body = _decode_event_body(event)
            return _response(200, start_session(service_context(), body, request_id, _request_time(event)))
        if route_key == ROUTE_COMPLETE:
            body = _decode_event_body(event)
            return _response(200, complete_session(service_context(), body))
        raise NotFoundError(f"404: {route_key}")

    except BadRequestError as exc:
        logger.info("Bad request request_id=%s: %s", request_id, exc)
        return _error_response(400, "bad_request", str(exc))

    except ForbiddenError as exc:
        logger.info("Forbidden request_id=%s: %s", request_id, exc)
        return _error_response(403, "forbidden", str(exc))

    except NotFoundError as exc:
        return _error_response(404, "not_found", str(exc))

    except Exception:
        logger.exception("Unhandled error request_id=%s", request_id)
        return _error_response(500, "internal_error", "Internal error")
