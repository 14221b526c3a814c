from __future__ import annotations

import base64
import csv
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import StringIO
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import azure.functions as func

from services.crm_errors import ConfigurationError, CrmError, Unauthenticated
from services.principal import Principal, principal_from_user
from shared.config import get_session_secret, get_session_ttl_seconds
from shared.db import Company, SessionLocal, User
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (ValueError, TypeError):
        return None


def _sign(payload_bytes: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


def issue_session_token(user: User, *, ttl_seconds: Optional[int] = None) -> Tuple[Optional[str], Optional[str]]:
    """
    Sign a session token for a user.

    The token carries only the user id, the company id and the expiry. The
    role is deliberately left out and re-read from the users table on every
    request. Returns ``(None, None)`` when no session secret is configured.
    """
    secret = get_session_secret()
    if not secret:
        logger.error("Session secret is not configured; refusing to issue tokens")
        return None, None
    expires_in = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else get_session_ttl_seconds()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    payload = {
        "uid": str(user.id),
        "cid": str(user.company_id),
        "exp": int(expires_at.timestamp()),
    }
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    token = f"{_b64url_encode(payload_bytes)}.{_b64url_encode(_sign(payload_bytes, secret))}"
    return token, expires_at.isoformat()


def verify_session_token(token: str) -> Optional[Dict[str, Any]]:
    raw = str(token or "").strip()
    if "." not in raw:
        return None
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    if not payload_bytes or not sig_bytes:
        return None
    secret = get_session_secret()
    if not secret:
        return None
    if not hmac.compare_digest(_sign(payload_bytes, secret), sig_bytes):
        return None
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp_ts = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    if exp_ts <= int(datetime.now(timezone.utc).timestamp()):
        return None
    if not payload.get("uid") or not payload.get("cid"):
        return None
    return payload


def extract_session_token(req: func.HttpRequest) -> str:
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    parts = auth_header.split(" ", 1)
    if len(parts) == 2 and parts[0].strip().lower() == "bearer":
        return parts[1].strip()
    return ""


def resolve_principal(req: func.HttpRequest, db) -> Optional[Principal]:
    """Principal for the request's bearer token, or None when it is missing or stale."""
    claims = verify_session_token(extract_session_token(req))
    if not claims:
        return None
    try:
        user_id = int(claims["uid"])
    except (TypeError, ValueError):
        return None
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    # A user moved to another company invalidates tokens issued for the old one.
    if str(user.company_id) != str(claims.get("cid")):
        logger.warning("Session company mismatch for user %s", user.id)
        return None
    company = db.get(Company, user.company_id)
    if company is None or not company.is_active:
        return None
    return principal_from_user(user)


def require_principal(req: func.HttpRequest, db) -> Principal:
    principal = resolve_principal(req, db)
    if principal is None:
        raise Unauthenticated()
    return principal


def json_response(data: Any, *, status_code: int = 200, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def crm_error_response(exc: CrmError, cors: Dict[str, str]) -> func.HttpResponse:
    # Server-side failures never leak their message to the caller.
    message = exc.default_message if exc.status_code >= 500 else exc.message
    return error_response(
        cors=cors,
        status_code=exc.status_code,
        message=message,
        code=exc.code,
        details=exc.details if exc.status_code < 500 else None,
    )


def server_error_response(cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=500, message=CrmError.default_message, code=CrmError.code)


def preflight_response(cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse("", status_code=204, headers=cors)


def parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def get_limit(req: func.HttpRequest, default: int = 50) -> int:
    raw = req.params.get("limit")
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(1, min(MAX_PAGE_SIZE, parsed))


_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _csv_cell(value: Any) -> Any:
    # Spreadsheets evaluate text cells that start like a formula.
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "'" + value
    return value


def csv_response(rows: List[Dict[str, Any]], *, filename: str, cors: Dict[str, str]) -> func.HttpResponse:
    output = StringIO()
    if rows:
        writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        for row in rows:
            writer.writerow({key: _csv_cell(value) for key, value in row.items()})
    headers = dict(cors)
    headers["Content-Type"] = "text/csv; charset=utf-8"
    headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return func.HttpResponse(output.getvalue(), status_code=200, headers=headers)


@dataclass(frozen=True)
class CsvExport:
    rows: List[Dict[str, Any]]
    filename: str


HandlerResult = Union[Tuple[Any, int], CsvExport]


def run_request(
    req: func.HttpRequest,
    methods: Iterable[str],
    handler: Callable[[Any, Optional[Principal]], HandlerResult],
    *,
    operation: str,
    authenticated: bool = True,
) -> func.HttpResponse:
    """
    Shared request lifecycle for the CRM endpoints.

    Answers preflight, opens a session, resolves the principal, runs the
    handler and commits. ``CrmError`` maps to its status and code; anything
    else is logged and surfaces as a generic 500.
    """
    cors = build_cors_headers(req, methods)
    if req.method == "OPTIONS":
        return preflight_response(cors)
    db = SessionLocal()
    try:
        principal = require_principal(req, db) if authenticated else None
        result = handler(db, principal)
        db.commit()
        if isinstance(result, CsvExport):
            return csv_response(result.rows, filename=result.filename, cors=cors)
        payload, status_code = result
        return json_response(payload, status_code=status_code, cors=cors)
    except CrmError as exc:
        db.rollback()
        if isinstance(exc, ConfigurationError):
            logger.error("%s failed on server configuration: %s", operation, exc)
        return crm_error_response(exc, cors)
    except Exception:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("%s failed", operation)
        return server_error_response(cors)
    finally:
        db.close()
