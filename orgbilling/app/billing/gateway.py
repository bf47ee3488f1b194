"""HTTP client for the Moyasar hosted invoice API."""
from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from ..exceptions import GatewayError, GatewayNotConfigured
from .config import BillingConfig
from .models import GatewayInvoice

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def invoice_from_payload(payload: Dict[str, Any]) -> GatewayInvoice:
    """Convert a Moyasar invoice body into :class:`GatewayInvoice`."""

    invoice_id = payload.get("id")
    if not invoice_id:
        raise GatewayError("Gateway response did not include an invoice id")
    metadata = payload.get("metadata")
    return GatewayInvoice(
        invoice_id=str(invoice_id),
        status=str(payload.get("status") or "").lower(),
        amount_minor_units=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or "SAR").upper(),
        invoice_url=payload.get("url") or payload.get("invoice_url"),
        expires_at=_parse_timestamp(payload.get("expired_at")),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


class MoyasarGateway:
    """Creates and fetches hosted invoices using basic authentication."""

    name = "moyasar"

    def __init__(self, secret_key: str, *, api_url: str = "https://api.moyasar.com/v1", timeout: float = 10.0) -> None:
        if not secret_key:
            raise GatewayNotConfigured("Moyasar secret key is not configured")
        self._secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: BillingConfig) -> Optional["MoyasarGateway"]:
        if not config.gateway_configured:
            return None
        return cls(config.gateway_secret_key or "", api_url=config.gateway_api_url)

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(f"{self._secret_key}:".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        http_request = urllib_request.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with urllib_request.urlopen(http_request, timeout=self.timeout) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            detail = ""
            try:
                detail = json.loads(exc.read().decode("utf-8")).get("message", "")
            except (ValueError, UnicodeDecodeError, AttributeError):
                detail = ""
            logger.warning(
                "Moyasar request rejected",
                extra={"gateway_path": path, "status_code": exc.code, "error": detail or str(exc)},
            )
            raise GatewayError(detail or f"Moyasar returned HTTP {exc.code}", status_code=exc.code) from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            logger.warning(
                "Moyasar request failed",
                extra={"gateway_path": path, "error": str(exc)},
            )
            raise GatewayError(f"Could not reach Moyasar: {exc}") from exc

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise GatewayError("Moyasar returned a malformed response") from exc
        if not isinstance(payload, dict):
            raise GatewayError("Moyasar returned an unexpected response")
        return payload

    def create_invoice(
        self,
        *,
        amount_minor_units: int,
        currency: str,
        description: str,
        metadata: Dict[str, object],
        success_url: str,
        back_url: str,
        callback_url: str,
        expires_at: datetime,
    ) -> GatewayInvoice:
        body = {
            "amount": amount_minor_units,
            "currency": currency,
            "description": description,
            "metadata": metadata,
            "success_url": success_url,
            "back_url": back_url,
            "callback_url": callback_url,
            "expired_at": expires_at.astimezone(timezone.utc).isoformat(),
        }
        return invoice_from_payload(self._request("POST", "/invoices", body))

    def get_invoice(self, invoice_id: str) -> GatewayInvoice:
        path = f"/invoices/{urllib_parse.quote(invoice_id, safe='')}"
        return invoice_from_payload(self._request("GET", path))


__all__ = ["MoyasarGateway", "invoice_from_payload"]
