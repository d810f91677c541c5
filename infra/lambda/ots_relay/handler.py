import base64
import binascii
import json
import os
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import requests
from requests.structures import CaseInsensitiveDict


ALLOWED_CALENDAR_HOSTS = frozenset(
    {
        "alice.btc.calendar.opentimestamps.org",
        "bob.btc.calendar.opentimestamps.org",
        "finney.calendar.eternitywall.com",
    }
)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Path prefix the relay was first published under; browsers in the wild still use it.
LEGACY_MOUNT = "/.netlify/functions/ots-proxy/"
DEFAULT_MOUNT = "/ots-proxy/"

_CORS_HEADERS = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET,POST,OPTIONS"),
    ("Access-Control-Allow-Headers", "Content-Type"),
    ("Access-Control-Max-Age", "86400"),
)

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
# Browsers and urllib disagree on how these split a URL, so refuse them outright.
_AMBIGUOUS_URL_CHARS_RE = re.compile(r"[\x00-\x20\x7f\\]")
_URL_STRIP_CHARS = "".join(chr(c) for c in range(0x21))


@dataclass(frozen=True)
class Preflight:
    pass


@dataclass(frozen=True)
class ResolutionFailure:
    reason: str


@dataclass(frozen=True)
class ValidationFailure:
    kind: str  # "malformed" | "forbidden"
    hostname: str = ""


@dataclass(frozen=True)
class BodyFailure:
    reason: str


@dataclass(frozen=True)
class ForwardFailure:
    message: str
    error_type: str = ""


@dataclass(frozen=True)
class ParsedTarget:
    url: str
    scheme: str
    hostname: str


@dataclass(frozen=True)
class UpstreamResult:
    status_code: int
    content_type: str
    body: bytes


Outcome = Union[Preflight, ResolutionFailure, ValidationFailure, BodyFailure, ForwardFailure, UpstreamResult]

_PREFLIGHT = Preflight()


def _log_event(event_type: str, **fields: Any) -> None:
    payload: Dict[str, Any] = {"event": event_type}
    payload.update(fields)
    try:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))
    except Exception:
        # Last-resort log safety to avoid breaking request flow.
        print(f'{{"event":"{event_type}","log_error":"serialization_failed"}}')


def _normalize_mount(raw: str) -> str:
    stripped = raw.strip().strip("/")
    if stripped == "":
        return "/"
    return f"/{stripped}/"


def _mount_markers() -> Tuple[str, ...]:
    mount = _normalize_mount(os.getenv("OTS_RELAY_MOUNT") or DEFAULT_MOUNT)
    if mount == LEGACY_MOUNT:
        return (LEGACY_MOUNT,)
    # Legacy first: a root mount ("/") would otherwise swallow legacy paths.
    return (LEGACY_MOUNT, mount)


def _upstream_timeout_seconds() -> Optional[float]:
    raw = (os.getenv("OTS_RELAY_UPSTREAM_TIMEOUT_SECONDS") or "").strip()
    if raw == "":
        return None
    try:
        val = float(raw)
    except ValueError:
        return None
    if val <= 0:
        return None
    return val


def _b64url_nopad(raw: str) -> str:
    """Client-side encoder for the path form: what a browser puts after the mount."""
    b = raw.encode("utf-8")
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def _from_b64url(encoded: str) -> str:
    """Decode a base64url segment, with or without padding, into UTF-8 text.

    Raises ValueError (binascii.Error or UnicodeDecodeError) on bad input.
    """
    b64 = encoded.replace("-", "+").replace("_", "/") + "=" * (-len(encoded) % 4)
    return base64.b64decode(b64, validate=True).decode("utf-8")


def _event_method(event: Mapping[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        # HTTP API (payload format 2.0)
        rc = event.get("requestContext") or {}
        http = rc.get("http") if isinstance(rc, dict) else None
        method = http.get("method") if isinstance(http, dict) else None
    return str(method or "GET").upper()


def _event_path(event: Mapping[str, Any]) -> str:
    return str(event.get("path") or event.get("rawPath") or "")


def _event_headers(event: Mapping[str, Any]) -> CaseInsensitiveDict:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        headers = {}
    return CaseInsensitiveDict({str(k): str(v) for k, v in headers.items() if k is not None and v is not None})


def _query_param(event: Mapping[str, Any], name: str) -> str:
    qs_single = event.get("queryStringParameters")
    if isinstance(qs_single, dict):
        return str(qs_single.get(name) or "")

    qs_multi = event.get("multiValueQueryStringParameters")
    if isinstance(qs_multi, dict):
        values = qs_multi.get(name)
        if isinstance(values, list):
            values = [v for v in values if v]
            if values:
                return str(values[-1])
        elif values:
            return str(values)
    return ""


def _resolve_target(event: Mapping[str, Any]) -> Union[str, ResolutionFailure]:
    """Extract the candidate target URL from the request.

    Query form wins: ``?url=<full url>``. Otherwise the path must contain a
    mount marker followed by ``<base64url(calendar base)>[/<suffix>]``; the
    suffix is appended to the decoded base behind a single ``/``.
    The result is not validated as a URL here.
    """
    url = _query_param(event, "url")
    if url:
        return url

    path = _event_path(event)
    for marker in _mount_markers():
        idx = path.find(marker)
        if idx == -1:
            continue

        rest = path[idx + len(marker) :]
        encoded_base, sep, tail = rest.partition("/")
        if encoded_base == "":
            return ResolutionFailure("empty_encoded_segment")
        suffix = "/" + tail if sep else ""

        try:
            decoded_base = _from_b64url(encoded_base)
        except ValueError:
            return ResolutionFailure("invalid_base64url")
        return decoded_base + suffix

    return ResolutionFailure("missing")


def _validate_target(candidate: str) -> Union[ParsedTarget, ValidationFailure]:
    candidate = candidate.strip(_URL_STRIP_CHARS)
    if _AMBIGUOUS_URL_CHARS_RE.search(candidate) or not _SCHEME_RE.match(candidate):
        return ValidationFailure("malformed")

    try:
        parts = urllib.parse.urlsplit(candidate)
        parts.port  # raises ValueError for a non-numeric or out-of-range port
    except ValueError:
        return ValidationFailure("malformed")

    # Exact membership on the parsed hostname only; never on the raw string.
    hostname = parts.hostname or ""
    if hostname not in ALLOWED_CALENDAR_HOSTS:
        return ValidationFailure("forbidden", hostname=hostname)

    return ParsedTarget(url=urllib.parse.urlunsplit(parts), scheme=parts.scheme.lower(), hostname=hostname)


def _outbound_body(event: Mapping[str, Any], method: str) -> Union[Optional[bytes], BodyFailure]:
    if method in ("GET", "HEAD"):
        return None

    body = event.get("body")
    if body is None or body == "":
        return None
    if not isinstance(body, str):
        body = str(body)

    if event.get("isBase64Encoded") is True:
        try:
            return base64.b64decode(body, validate=True)
        except binascii.Error:
            return BodyFailure("invalid_base64")
    return body.encode("utf-8")


def _forward(
    method: str,
    target: ParsedTarget,
    headers: Mapping[str, str],
    body: Optional[bytes],
) -> Union[UpstreamResult, ForwardFailure]:
    content_type = headers.get("Content-Type") or DEFAULT_CONTENT_TYPE

    # One plain request per invocation: no shared Session, so no cookies or
    # pooled connections outlive the call. Redirects could leave the allowlist.
    try:
        resp = requests.request(
            method,
            target.url,
            headers={"Content-Type": content_type},
            data=body,
            allow_redirects=False,
            timeout=_upstream_timeout_seconds(),
        )
        payload = resp.content
    except requests.exceptions.RequestException as e:
        return ForwardFailure(str(e) or type(e).__name__, error_type=type(e).__name__)

    return UpstreamResult(
        status_code=int(resp.status_code),
        content_type=str(resp.headers.get("Content-Type") or ""),
        body=payload,
    )


def _cors_headers() -> Dict[str, str]:
    return dict(_CORS_HEADERS)


def _text_response(status_code: int, body: str) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": _cors_headers(),
        "body": body,
        "isBase64Encoded": False,
    }


def _compose(outcome: Outcome) -> Dict[str, Any]:
    if isinstance(outcome, Preflight):
        return _text_response(204, "")
    if isinstance(outcome, ResolutionFailure):
        return _text_response(400, "Missing/invalid target")
    if isinstance(outcome, ValidationFailure):
        if outcome.kind == "forbidden":
            return _text_response(403, "Target not allowed")
        return _text_response(400, "Invalid target URL")
    if isinstance(outcome, BodyFailure):
        return _text_response(400, "Invalid request body")
    if isinstance(outcome, ForwardFailure):
        return _text_response(502, f"Upstream error: {outcome.message}")
    if isinstance(outcome, UpstreamResult):
        headers = _cors_headers()
        headers["Content-Type"] = outcome.content_type or DEFAULT_CONTENT_TYPE
        return {
            "statusCode": outcome.status_code,
            "headers": headers,
            "body": base64.b64encode(outcome.body).decode("ascii"),
            "isBase64Encoded": True,
        }
    raise TypeError(f"unsupported relay outcome: {type(outcome).__name__}")


def _relay(event: Mapping[str, Any], method: str) -> Outcome:
    candidate = _resolve_target(event)
    if isinstance(candidate, ResolutionFailure):
        _log_event("relay_rejected", stage="resolve", reason=candidate.reason, method=method, status=400)
        return candidate

    target = _validate_target(candidate)
    if isinstance(target, ValidationFailure):
        _log_event(
            "relay_rejected",
            stage="validate",
            reason=target.kind,
            host=target.hostname,
            method=method,
            status=403 if target.kind == "forbidden" else 400,
        )
        return target

    body = _outbound_body(event, method)
    if isinstance(body, BodyFailure):
        _log_event("relay_rejected", stage="body", reason=body.reason, method=method, status=400)
        return body

    result = _forward(method, target, _event_headers(event), body)
    if isinstance(result, ForwardFailure):
        _log_event("relay_upstream_error", method=method, host=target.hostname, error_type=result.error_type)
    else:
        _log_event(
            "relay_forward",
            method=method,
            host=target.hostname,
            status=result.status_code,
            request_bytes=len(body or b""),
            response_bytes=len(result.body),
        )
    return result


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    try:
        if not isinstance(event, dict):
            event = {}

        method = _event_method(event)
        if method == "OPTIONS":
            _log_event("relay_preflight", path=_event_path(event))
            return _compose(_PREFLIGHT)

        return _compose(_relay(event, method))

    except Exception as e:
        _log_event("relay_internal_error", error_type=type(e).__name__)
        return _text_response(500, "Internal relay error")
