"""
Failure diagnostics.

Turns exceptions (including provider SDK errors carrying an HTTP response) into
bounded, JSON-safe dicts and one-line summaries. Cause chains are followed up
to ``max_depth`` and cycles are cut. Headers are never read, and anything that
looks like a credential is redacted before it leaves this module.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional, Set

RESPONSE_BODY_LIMIT = 2000
SUMMARY_FIELD_LIMIT = 400
DEFAULT_MAX_DEPTH = 5

REDACTED = "[redacted]"

_SECRET_PATTERNS = (
    (re.compile(r"sk-[A-Za-z0-9_\-]{8,}"), REDACTED),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/\-]+=*"), f"Bearer {REDACTED}"),
    (
        re.compile(r"""(?i)\b(api[_-]?key|apikey|password|secret|access[_-]?token|token)(["']?\s*[:=]\s*["']?)([^\s"'&,;}]+)"""),
        rf"\1\2{REDACTED}",
    ),
)


def redact(value: str) -> str:
    """Replace anything that looks like a credential."""
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def truncate(value: Optional[str], max_length: int = SUMMARY_FIELD_LIMIT) -> Optional[str]:
    if not value:
        return None
    if len(value) <= max_length:
        return value
    return f"{value[:max_length]}…"


def safe_stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        try:
            return str(value)
        except Exception:
            return "[unserializable]"


def _json_safe(value: Any) -> Any:
    """Round-trip through JSON so the result can be logged and emitted as-is."""
    text = redact(safe_stringify(value))
    try:
        return json.loads(text)
    except ValueError:
        return truncate(text, RESPONSE_BODY_LIMIT)


def _response_text(response: Any) -> Optional[str]:
    text = getattr(response, "text", None)
    if callable(text):
        # aiohttp-style coroutine accessors cannot be awaited here
        return None
    if isinstance(text, str):
        return text
    return None


def serialize_response(response: Any) -> Optional[Dict[str, Any]]:
    """Extract status, reason and a truncated body from an HTTP response-like object."""
    if response is None:
        return None

    info: Dict[str, Any] = {}

    status = getattr(response, "status_code", None)
    if not isinstance(status, int):
        status = getattr(response, "status", None)
    if isinstance(status, int):
        info["status"] = status

    for attr in ("reason_phrase", "reason", "status_text"):
        reason = getattr(response, attr, None)
        if isinstance(reason, str) and reason:
            info["statusText"] = reason
            break

    try:
        body = _response_text(response)
    except Exception:
        # unread streaming responses refuse .text
        body = None
    if body:
        info["body"] = truncate(redact(body), RESPONSE_BODY_LIMIT)

    return info or None


def serialize_error(
    error: Any,
    max_depth: int = DEFAULT_MAX_DEPTH,
    _seen: Optional[Set[int]] = None,
) -> Dict[str, Any]:
    """
    Serialize an exception (or anything raised-like) into a bounded dict.

    Keys (present only when known): name, message, stage, status, code, type,
    response{status, statusText, body}, data, cause.
    """
    if not isinstance(error, BaseException):
        if isinstance(error, str):
            return {"message": redact(error)}
        return {"message": redact(safe_stringify(error))}

    seen = _seen if _seen is not None else set()
    if id(error) in seen:
        return {"name": type(error).__name__, "message": redact(str(error))}
    seen.add(id(error))

    info: Dict[str, Any] = {
        "name": type(error).__name__,
        "message": redact(str(error)),
    }

    stage = getattr(error, "stage", None)
    if isinstance(stage, str) and stage:
        info["stage"] = stage

    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = getattr(error, "status", None)
    if isinstance(status, int):
        info["status"] = status

    code = getattr(error, "code", None)
    if code is not None and isinstance(code, (str, int)):
        info["code"] = code

    error_type = getattr(error, "type", None)
    if isinstance(error_type, str):
        info["type"] = error_type

    response = serialize_response(getattr(error, "response", None))
    if response:
        info["response"] = response

    body = getattr(error, "body", None)
    if body is not None:
        info["data"] = _json_safe(body)

    cause = error.__cause__
    if cause is None and not error.__suppress_context__:
        cause = error.__context__
    if cause is not None:
        if max_depth > 1:
            info["cause"] = serialize_error(cause, max_depth - 1, seen)
        else:
            info["cause"] = {"name": type(cause).__name__, "message": "[cause chain truncated]"}

    return info


def build_error_summary(info: Dict[str, Any]) -> str:
    """One-line summary: ``[stage] Name: message | status 400 | ... | cause -> ...``."""
    name = info.get("name")
    message = info.get("message", "")
    head = f"{name}: {message}" if name and name != "Exception" else message

    stage = info.get("stage")
    if isinstance(stage, str) and stage:
        head = f"[{stage}] {head}"
    parts = [head]

    if isinstance(info.get("status"), int):
        parts.append(f"status {info['status']}")
    if info.get("code") is not None:
        parts.append(f"code {info['code']}")
    if isinstance(info.get("type"), str):
        parts.append(f"type {info['type']}")

    response = info.get("response") or {}
    if response.get("status"):
        status_text = f" {response['statusText']}" if response.get("statusText") else ""
        parts.append(f"response {response['status']}{status_text}")
    if response.get("body"):
        parts.append(f"responseBody {truncate(response['body'])}")

    if info.get("data") is not None:
        parts.append(f"data {truncate(safe_stringify(info['data']))}")

    if info.get("cause"):
        parts.append(f"cause -> {build_error_summary(info['cause'])}")

    return " | ".join(parts)
