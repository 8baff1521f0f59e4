# quoteflow/auth.py
from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from .config import settings


@dataclass(frozen=True)
class Principal:
    tenant_id: int
    user_id: Optional[int]
    role: str  # contractor | customer | system


def _int_header(request: Request, name: str, *, required: bool) -> Optional[int]:
    raw = (request.headers.get(name) or "").strip()
    if not raw:
        if required:
            raise HTTPException(status_code=401, detail=f"Missing {name}")
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Invalid {name}") from None


def get_principal(
    request: Request,
    x_gateway_secret: Optional[str] = Header(default=None, alias="X-Gateway-Secret"),
) -> Principal:
    """
    Identity is established upstream; this only reads it.

      - gateway: the API gateway injects tenant/user headers and proves itself
        with a shared secret
      - dev: the same headers are trusted as-is (never allowed in prod)
    """
    mode = (settings.auth_mode or "dev").strip().lower()
    if mode == "gateway":
        expected = settings.gateway_shared_secret or ""
        if not expected or not hmac.compare_digest(expected, x_gateway_secret or ""):
            raise HTTPException(status_code=401, detail="Untrusted identity headers")
    elif mode != "dev":
        raise HTTPException(status_code=500, detail=f"Unknown auth_mode {mode!r}")

    tenant_id = _int_header(request, settings.dev_header_tenant_id, required=True)
    user_id = _int_header(request, settings.dev_header_user_id, required=False)
    role = (request.headers.get(settings.dev_header_role) or "contractor").strip().lower()
    if role not in ("contractor", "customer"):
        raise HTTPException(status_code=403, detail=f"Unknown role {role!r}")

    return Principal(tenant_id=int(tenant_id), user_id=user_id, role=role)


def require_contractor(p: Principal = Depends(get_principal)) -> Principal:
    if p.role != "contractor":
        raise HTTPException(status_code=403, detail="Requires contractor role")
    return p


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(default=None, alias="X-Webhook-Secret")) -> None:
    expected = settings.payment_webhook_secret
    if expected and not hmac.compare_digest(expected, x_webhook_secret or ""):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
