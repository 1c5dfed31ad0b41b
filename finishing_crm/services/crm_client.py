"""
HTTP client for the external CRM/accounting API (invoices and payments).

Only the two calls the order sync needs are implemented. Transport errors
are retried a few times in-process with tenacity; anything still failing is
raised as CrmApiError so the outbox runner can decide whether the job is
worth another attempt.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.settings import settings

logger = get_logger(__name__)


class CrmApiError(Exception):
    """CRM call failed. status_code is None for transport failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        self.status_code = status_code
        self._retryable = retryable
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


def is_crm_configured() -> bool:
    return bool(settings.crm_api_url and settings.crm_api_token)


class CrmClient:
    """Thin async wrapper around the CRM REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.crm_api_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.crm_api_token
        self.timeout = timeout
        self.transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_token}"},
        ) as client:
            response = await client.post(path, json=body)

        if response.status_code >= 400:
            raise CrmApiError(
                f"CRM {path} returned HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            # Usually a proxy or maintenance page answering in place of the API
            raise CrmApiError(
                f"CRM {path} returned HTTP {response.status_code} without a JSON object: {response.text[:200]}",
                status_code=response.status_code,
                retryable=True,
            )
        return data

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._post(path, body)
        except httpx.TransportError as e:
            logger.warning(f"CRM request to {path} failed: {e}")
            raise CrmApiError(f"CRM transport error on {path}: {e}") from e

    async def create_invoice(
        self,
        company_id: str,
        order_id: str,
        items: List[Dict[str, Any]],
        currency: str,
    ) -> Dict[str, Any]:
        """
        Create an invoice for an order.

        Returns:
            {"invoice_id": ..., "invoice_number": ...}
        """
        data = await self.post(
            "/invoices",
            {
                "customer_id": company_id,
                "reference_number": order_id,
                "currency_code": currency,
                "line_items": [
                    {
                        "item_code": item["product_code"],
                        "description": item.get("description") or "",
                        "quantity": item["quantity"],
                        "rate": str(item["unit_price"]),
                    }
                    for item in items
                ],
            },
        )
        invoice = data.get("invoice", data)
        if not invoice.get("invoice_id"):
            raise CrmApiError("CRM /invoices response carried no invoice_id", retryable=False)
        return {
            "invoice_id": invoice.get("invoice_id"),
            "invoice_number": invoice.get("invoice_number"),
        }

    async def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_date: date,
        reference: Optional[str] = None,
        payment_mode: str = "card",
    ) -> Dict[str, Any]:
        data = await self.post(
            "/customerpayments",
            {
                "invoice_id": invoice_id,
                "amount": str(amount),
                "date": payment_date.isoformat(),
                "payment_mode": payment_mode,
                "reference_number": reference or "",
            },
        )
        payment = data.get("payment", data)
        return {"payment_id": payment.get("payment_id")}


def get_crm_client() -> CrmClient:
    return CrmClient()
