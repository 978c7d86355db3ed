"""Request audit middleware persisting masked JSON records to S3."""
from __future__ import annotations

import json
import logging
import random
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from hoa_democracy.core.config import Settings

# Credentials are hidden entirely; identifiers keep their last four characters.
_SECRET_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "voter_token",
}
_IDENTIFIER_KEYS = {
    "email",
    "receipt_code",
}
_RECEIPT_PATH = re.compile(r"(/receipts/)([^/]+)")


def _mask_value(value: Any) -> Any:
    if isinstance(value, dict):
        return _mask_mapping(value)
    if isinstance(value, list):
        return [_mask_value(item) for item in value]
    if isinstance(value, str) and "@" in value:
        name, _, domain = value.partition("@")
        hidden = name[0] + "***" if name else "***"
        return f"{hidden}@{domain}" if domain else "***@***"
    return value


def _mask_mapping(mapping: dict[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in mapping.items():
        lowered = key.lower()
        if lowered in _SECRET_KEYS:
            sanitized[key] = "***"
        elif lowered in _IDENTIFIER_KEYS:
            if isinstance(value, str) and len(value) > 4:
                sanitized[key] = f"***{value[-4:]}"
            else:
                sanitized[key] = "***"
        else:
            sanitized[key] = _mask_value(value)
    return sanitized


def _mask_path(path: str) -> str:
    """Receipt codes are bearer secrets; keep only their last four characters."""

    def _hide(match: re.Match[str]) -> str:
        code = match.group(2)
        return f"{match.group(1)}***{code[-4:] if len(code) > 4 else ''}"

    return _RECEIPT_PATH.sub(_hide, path)


@dataclass(slots=True)
class AuditLogRecord:
    """Structured log entry emitted by the middleware."""

    timestamp: str
    request_id: str
    method: str
    path: str
    status: int
    duration_ms: float
    actor: str | None
    ip_address: str | None
    query: dict[str, Any]
    body: Any

    def to_json(self) -> str:
        payload = asdict(self)
        payload["duration_ms"] = round(self.duration_ms, 2)
        return json.dumps(payload, default=str)

    def to_dict(self) -> dict[str, Any]:
        return json.loads(self.to_json())


class AuditMiddleware(BaseHTTPMiddleware):
    """Starlette middleware capturing an audit trail of API calls."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        settings: Settings,
        logger: logging.Logger | None = None,
        s3_client_factory: Callable[[], Any] | None = None,
    ) -> None:
        super().__init__(app)
        self._settings = settings
        self._logger = logger or logging.getLogger("audit")
        self._s3_client_factory = s3_client_factory or self._default_client_factory
        self._s3_client: Any | None = None
        self._bucket_ready = False

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()

        body_bytes = await request.body()
        self._set_body(request, body_bytes)

        masked_body = None
        if body_bytes:
            try:
                masked_body = _mask_value(json.loads(body_bytes))
            except (json.JSONDecodeError, UnicodeDecodeError):
                masked_body = "<binary>"

        response = await call_next(request)

        record = AuditLogRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            request_id=request_id,
            method=request.method,
            path=_mask_path(request.url.path),
            status=response.status_code,
            duration_ms=(time.perf_counter() - start) * 1000,
            actor=_mask_value(getattr(request.state, "actor", None)),
            ip_address=request.client.host if request.client else None,
            query=_mask_mapping(dict(request.query_params.multi_items())),
            body=masked_body,
        )

        self._logger.info(record.to_json())
        self._persist_to_s3(record)

        response.headers["X-Request-ID"] = request_id
        return response

    def _default_client_factory(self) -> Any:
        return boto3.client(
            "s3",
            region_name=self._settings.aws_region,
            endpoint_url=self._settings.s3_endpoint_url,
        )

    def _get_s3_client(self) -> Any:
        if self._s3_client is None:
            self._s3_client = self._s3_client_factory()
        return self._s3_client

    def _ensure_bucket(self, client: Any) -> None:
        if self._bucket_ready:
            return
        bucket = self._settings.audit_log_bucket
        try:
            client.head_bucket(Bucket=bucket)
        except ClientError:
            location: dict[str, Any] = {}
            if self._settings.aws_region != "us-east-1" and self._settings.s3_endpoint_url is None:
                location["CreateBucketConfiguration"] = {"LocationConstraint": self._settings.aws_region}
            client.create_bucket(Bucket=bucket, **location)
        self._bucket_ready = True

    def _sampled(self) -> bool:
        rate = self._settings.audit_log_sample_rate
        if rate <= 0:
            return False
        return rate >= 1 or random.random() <= rate

    def _persist_to_s3(self, record: AuditLogRecord) -> None:
        """Write the record as its own object under the day's prefix."""

        if not self._sampled():
            return
        try:
            client = self._get_s3_client()
            self._ensure_bucket(client)
            client.put_object(
                Bucket=self._settings.audit_log_bucket,
                Key=self._record_key(),
                Body=record.to_json().encode("utf-8") + b"\n",
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - S3 connectivity issues
            self._logger.error("failed to persist audit record", extra={"error": str(exc)})

    def _record_key(self) -> str:
        now = datetime.now(timezone.utc)
        prefix = self._settings.audit_log_prefix.rstrip("/")
        return f"{prefix}/{now:%Y/%m/%d}/{now:%H%M%S%f}-{uuid4().hex[:12]}.json"

    @staticmethod
    def _set_body(request: Request, body: bytes) -> None:
        async def receive() -> dict[str, Any]:
            nonlocal consumed
            if consumed:
                return {"type": "http.request", "body": b"", "more_body": False}
            consumed = True
            return {"type": "http.request", "body": body, "more_body": False}

        consumed = False
        request._receive = receive  # type: ignore[attr-defined]


__all__ = ["AuditLogRecord", "AuditMiddleware"]
