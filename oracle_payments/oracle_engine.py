"""Client for the Oracle Engine backend (profile and subscription store)."""

from typing import Any, Dict, Optional

import httpx
import structlog

from oracle_payments.errors import ProcessorUnavailable

logger = structlog.get_logger(__name__)


class OracleEngineClient:
    name = "oracle_engine"

    def __init__(self, base_url: str, timeout: float = 10.0, http_client: Optional[httpx.Client] = None):
        self.http = http_client or httpx.Client(base_url=base_url, timeout=timeout)
        if http_client is not None:
            self.http.base_url = base_url

    def close(self) -> None:
        self.http.close()

    def _send(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise ProcessorUnavailable(f"Oracle Engine is unreachable: {e}", self.name) from e
        if response.status_code >= 400:
            raise ProcessorUnavailable(
                f"Oracle Engine answered {response.status_code} for {path}", self.name
            )
        try:
            return response.json()
        except ValueError:
            return {}

    def activate_subscription(self, account_id: str, plan_id: str, billing_cycle: str,
                              payment_id: str, amount_paid, currency: str, order_id: str) -> Dict[str, Any]:
        """Activate or extend a subscription, falling back to a direct plan update.

        The activation endpoint also sends the confirmation email; the fallback
        does not.
        """
        try:
            result = self._send("POST", "/api/subscriptions/activate", {
                "user_id": account_id,
                "plan_id": plan_id,
                "billing_cycle": billing_cycle,
                "payment_id": payment_id,
                "amount_paid": amount_paid,
                "pay_currency": currency,
                "order_id": order_id,
            })
            logger.info("subscription_activated", account_id=account_id, plan_id=plan_id, payment_id=payment_id)
            return result
        except ProcessorUnavailable as e:
            logger.warning("subscription_activation_failed_trying_fallback", account_id=account_id, error=str(e))

        result = self._send("PUT", f"/api/dashboard/{account_id}/subscription", {"subscription_plan": plan_id})
        logger.info("subscription_updated_via_fallback", account_id=account_id, plan_id=plan_id)
        return result
