"""
SPACE entitlement service client.
One-way sync: local subscription state -> SPACE contract (plan + add-ons).
Add-ons are sent per service as {service_name: {addon_name: 1}}.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from services.errors import EntitlementServiceError

logger = logging.getLogger(__name__)

CONTRACTS_PATH = "/api/v1/contracts"


class EntitlementClient:
    """SPACE contracts API client with an explicit open/close lifecycle."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        service_name: str = "socialbeats",
        free_plan: str = "FREE",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.service_name = service_name
        self.free_plan = free_plan
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info("SPACE client opened base_url=%s service=%s", self.base_url, self.service_name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("SPACE client closed")

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if self._client is None:
            raise EntitlementServiceError("SPACE client is not open")
        try:
            return await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise EntitlementServiceError(f"SPACE timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            raise EntitlementServiceError(f"SPACE request failed on {method} {path}: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise EntitlementServiceError(
                f"SPACE {action} failed with {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )

    def _format_addons(self, addon_names: List[str]) -> Dict[str, Dict[str, int]]:
        return {self.service_name: {name: 1 for name in addon_names}}

    def _plans_payload(self, plan: str, addon_names: List[str]) -> Dict[str, Any]:
        return {
            "contractedServices": {self.service_name: "1.0"},
            "subscriptionPlans": {self.service_name: plan},
            "subscriptionAddOns": self._format_addons(addon_names),
        }

    async def get_contract(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"{CONTRACTS_PATH}/{user_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "get contract")
        return response.json()

    async def upsert_contract(self, user_id: str, username: Optional[str], plan: str, addon_names: List[str]) -> None:
        """Create the contract if missing, otherwise update it in place."""
        existing = await self.get_contract(user_id)
        if existing:
            await self.update_contract(user_id, plan, addon_names)
            return
        payload = {
            "userContact": {"userId": user_id, "username": username or user_id},
            "billingPeriod": {"autoRenew": True, "renewalDays": 30},
            **self._plans_payload(plan, addon_names),
        }
        response = await self._request("POST", CONTRACTS_PATH, json=payload)
        self._raise_for_status(response, "create contract")
        logger.info("SPACE: contract created user_id=%s plan=%s addons=%s", user_id, plan, addon_names)

    async def update_contract(self, user_id: str, plan: str, addon_names: List[str]) -> None:
        response = await self._request(
            "PUT", f"{CONTRACTS_PATH}/{user_id}", json=self._plans_payload(plan, addon_names)
        )
        self._raise_for_status(response, "update contract")
        logger.info("SPACE: contract updated user_id=%s plan=%s addons=%s", user_id, plan, addon_names)

    async def downgrade_to_free(self, user_id: str) -> None:
        await self.update_contract(user_id, self.free_plan, [])

    async def delete_contract(self, user_id: str) -> None:
        response = await self._request("DELETE", f"{CONTRACTS_PATH}/{user_id}")
        if response.status_code == 404:
            logger.info("SPACE: contract for user_id=%s already absent", user_id)
            return
        self._raise_for_status(response, "delete contract")
        logger.info("SPACE: contract deleted user_id=%s", user_id)
