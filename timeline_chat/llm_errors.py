"""Typed failures raised by the LLM gateway and the folder stores."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Literal, Mapping


ProviderErrorCode = Literal[
    "not_configured",
    "invalid_request",
    "unauthorized",
    "forbidden",
    "rate_limited",
    "upstream_timeout",
    "upstream_error",
    "bad_output",
]

MAX_SAFE_MESSAGE_LENGTH = 200


class ProviderError(Exception):
    """An LLM provider failed in a way the caller can classify by ``code``."""

    def __init__(
        self,
        *,
        code: ProviderErrorCode,
        status: int,
        provider: str,
        message: str,
        retry_after_sec: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.provider = provider
        self.message = message
        self.retry_after_sec = retry_after_sec
        self.details = details or {}

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code!r}, provider={self.provider!r}, status={self.status})"


class StoreError(Exception):
    """A folder-store read failed or timed out."""

    def __init__(self, operation: str, message: str, *, code: str = "upstream_error"):
        super().__init__(message)
        self.operation = operation
        self.code = code


def truncate_safe(value: str) -> str:
    return value.strip()[:MAX_SAFE_MESSAGE_LENGTH]


def _provider_message(response_json: Any, response_text: str | None) -> str | None:
    if isinstance(response_json, dict):
        direct = response_json.get("message")
        if isinstance(direct, str) and direct:
            return truncate_safe(direct)
        nested = response_json.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            return truncate_safe(nested["message"])
    if isinstance(response_text, str) and response_text.strip():
        return truncate_safe(response_text)
    return None


def _provider_code(response_json: Any) -> str | None:
    if not isinstance(response_json, dict):
        return None
    if isinstance(response_json.get("code"), str):
        return truncate_safe(response_json["code"])
    nested = response_json.get("error")
    if isinstance(nested, dict):
        for key in ("code", "status"):
            if isinstance(nested.get(key), str):
                return truncate_safe(nested[key])
    return None


def parse_retry_after(headers: Mapping[str, str] | None) -> int | None:
    """Seconds from a Retry-After header (delta-seconds or HTTP date)."""
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = int((when - datetime.now(timezone.utc)).total_seconds() + 0.999)
    return delta if delta > 0 else None


def normalize_http_error(
    *,
    provider: str,
    status: int,
    response_json: Any = None,
    response_text: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> ProviderError:
    """Map a non-2xx provider HTTP response onto a ProviderError."""
    details: dict[str, Any] = {"providerStatus": status}
    provider_code = _provider_code(response_json)
    if provider_code:
        details["providerCode"] = provider_code
    provider_message = _provider_message(response_json, response_text)
    if provider_message:
        details["providerMessage"] = provider_message

    if status == 401:
        return ProviderError(
            code="unauthorized", status=401, provider=provider,
            message="Provider unauthorized.", details=details,
        )
    if status == 403:
        return ProviderError(
            code="forbidden", status=403, provider=provider,
            message="Provider forbidden request.", details=details,
        )
    if status == 429:
        return ProviderError(
            code="rate_limited", status=429, provider=provider,
            message="Provider rate limited the request.",
            retry_after_sec=parse_retry_after(headers), details=details,
        )
    if status in (400, 404, 409, 422):
        return ProviderError(
            code="invalid_request", status=400, provider=provider,
            message="Provider rejected request.", details=details,
        )
    return ProviderError(
        code="upstream_error", status=502, provider=provider,
        message="Provider upstream error.", details=details,
    )


@dataclass(slots=True)
class ApiError:
    status: int
    code: str
    message: str
    details: dict[str, Any] | None = None
    retry_after_sec: int | None = None


def to_api_error(error: ProviderError, is_admin: bool = True) -> ApiError:
    """Request-level error surfaced to the caller for a provider failure.

    Only admins are told to fix credentials; everyone else gets a generic
    configuration message.
    """
    details: dict[str, Any] = {}
    if "providerStatus" in error.details:
        details["providerStatus"] = error.details["providerStatus"]
    if "providerMessage" in error.details:
        details["providerMessage"] = truncate_safe(str(error.details["providerMessage"]))
    safe_details = details or None

    if error.code == "not_configured":
        if is_admin:
            return ApiError(400, "provider_not_configured", "Provider is not configured. Add credentials in admin settings.")
        return ApiError(400, "provider_not_configured", "Chat provider is not configured.")
    if error.code == "invalid_request":
        return ApiError(400, "invalid_request", "Provider rejected the request.", safe_details)
    if error.code == "unauthorized":
        return ApiError(401, "provider_unauthorized", "Provider credentials were rejected.", safe_details)
    if error.code == "forbidden":
        return ApiError(403, "provider_forbidden", "Provider refused access for this request.", safe_details)
    if error.code == "rate_limited":
        return ApiError(
            429, "rate_limited", "Provider rate limit exceeded. Try again shortly.",
            safe_details, retry_after_sec=error.retry_after_sec,
        )
    if error.code == "upstream_timeout":
        return ApiError(504, "upstream_timeout", "Provider timed out.", safe_details)
    if error.code == "bad_output":
        return ApiError(502, "provider_bad_output", "Provider returned invalid output.", safe_details)
    return ApiError(502, "upstream_error", "Provider request failed.", safe_details)
