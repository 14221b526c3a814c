from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import azure.functions as func

from shared.config import get_setting

_TRUTHY = {"1", "true", "yes", "y"}

# Headers the CRM frontend sends; anything a preflight asks for is echoed as well.
CRM_ALLOWED_HEADERS = ["Content-Type", "Authorization"]
CRM_EXPOSED_HEADERS = ["Content-Disposition"]


def _allowed_origins() -> List[str]:
    raw = get_setting("ALLOWED_ORIGINS") or "*"
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return ["*"] if "*" in origins or not origins else origins


def _flag(name: str, default: bool = False) -> bool:
    raw = get_setting(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _is_local_origin(origin: Optional[str]) -> bool:
    if not origin:
        return False
    return origin.startswith("http://localhost") or origin.startswith("http://127.0.0.1")


def _allow_headers(req: func.HttpRequest) -> str:
    merged: Dict[str, str] = {name.lower(): name for name in CRM_ALLOWED_HEADERS}
    for name in (req.headers.get("Access-Control-Request-Headers") or "").split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    origin = req.headers.get("origin") or req.headers.get("Origin")
    methods: List[str] = []
    for method in list(allowed_methods) + ["OPTIONS"]:
        normalized = method.strip().upper()
        if normalized and normalized not in methods:
            methods.append(normalized)

    allowed = _allowed_origins()
    allow_all = allowed == ["*"]
    allow_credentials = _flag("CORS_ALLOW_CREDENTIALS")
    origin_allowed = allow_all or (origin in allowed) or (_flag("CORS_ALLOW_LOCALHOST", True) and _is_local_origin(origin))

    headers: Dict[str, str] = {"Vary": "Origin"}
    if not origin_allowed:
        return headers
    # With credentials the caller's origin is echoed, never "*".
    if allow_credentials and origin:
        allow_origin = origin
    else:
        allow_origin = "*" if allow_all else (origin or "*")
    headers.update(
        {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(methods),
            "Access-Control-Allow-Headers": _allow_headers(req),
            "Access-Control-Expose-Headers": ", ".join(CRM_EXPOSED_HEADERS),
        }
    )
    if allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
