# quoteflow/clients/payment_gateway.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from ..config import settings


@dataclass(frozen=True)
class GatewaySession:
    session_id: str
    status: Optional[str]  # paid|unpaid|no_payment_required (None when unknown)
    amount: Optional[Decimal]
    currency: Optional[str]
    raw: dict[str, Any]

    @property
    def paid(self) -> bool:
        return (self.status or "").lower() == "paid"


class PaymentGatewayClient:
    """
    Read-only view of checkout sessions. Reconciliation never calls this
    inside a transaction; callers re-verify first, then open the unit of work.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base = (base_url or settings.payment_gateway_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_gateway_api_key
        self.timeout = timeout
        self.transport = transport

    def enabled(self) -> bool:
        return bool(self.api_key)

    def get_session(self, session_id: str) -> GatewaySession:
        if not self.api_key:
            return GatewaySession(session_id, None, None, None, {"error": "payment_gateway_api_key not set"})

        url = f"{self.base}/checkout/sessions/{session_id}"
        headers = {"Authorization": f"Bearer {self.api_key}"}

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            r = client.get(url, headers=headers)
            r.raise_for_status()
            data = r.json()

        amount = data.get("amount_total")
        return GatewaySession(
            session_id=session_id,
            status=data.get("payment_status"),
            # gateway amounts are integer minor units
            amount=(Decimal(int(amount)) / 100) if isinstance(amount, int) else None,
            currency=(data.get("currency") or None),
            raw=data,
        )
