from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger
import requests

from .errors import BrokerRejected, ConfigurationMissing
from .settings import settings


TRADOVATE_API_URLS = {
    "demo": "https://demo.tradovateapi.com/v1",
    "live": "https://live.tradovateapi.com/v1",
}
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class OrderResult:
    order_id: int
    raw: dict

    def to_dict(self) -> dict:
        return {"order_id": self.order_id, "raw": self.raw}


class TradovateClient:
    """REST client for the subset of the Tradovate API that order mirroring needs.

    Reads go through ``_call_with_retry``; order placement is single-shot, so a
    timeout never turns into a duplicate order.
    """

    def __init__(self, environment: str | None = None, session: requests.Session | None = None) -> None:
        self.environment = environment or settings.tradovate_env
        self.base_url = TRADOVATE_API_URLS[self.environment]
        self.timeout = settings.tradovate_timeout_seconds
        self.account_id = settings.tradovate_account_id
        self.http = session or requests
        self._access_token: str | None = None
        self._token_expiry: datetime | None = None
        self._user_id: int | None = None

    def is_configured(self) -> bool:
        return bool(settings.tradovate_username and settings.tradovate_password and settings.tradovate_client_secret)

    def is_authenticated(self) -> bool:
        if not self._access_token or self._token_expiry is None:
            return False
        return datetime.now(timezone.utc) + TOKEN_REFRESH_MARGIN < self._token_expiry

    def ensure_session(self) -> None:
        if self.is_authenticated():
            return
        if not self.is_configured():
            raise ConfigurationMissing("TRADOVATE_USERNAME/TRADOVATE_PASSWORD/TRADOVATE_CLIENT_SECRET")
        self.authenticate()

    def authenticate(self) -> dict:
        body = {
            "name": settings.tradovate_username,
            "password": settings.tradovate_password,
            "appId": settings.tradovate_client_id,
            "appVersion": "1.0",
            "cid": settings.tradovate_client_id,
            "sec": settings.tradovate_client_secret,
            "deviceId": settings.tradovate_device_id or f"trade-mirror-{uuid.uuid4().hex[:12]}",
        }
        try:
            response = self.http.post(
                f"{self.base_url}/auth/accesstokenrequest",
                json=body,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrokerRejected(f"Authentication request failed: {exc}") from exc
        if response.status_code >= 400:
            raise BrokerRejected(f"Authentication failed: {response.text}", status_code=response.status_code)

        try:
            data = response.json() or {}
        except ValueError as exc:
            raise BrokerRejected(f"Authentication returned a non-JSON body: {response.text[:200]}") from exc
        if data.get("errorText") or not data.get("accessToken"):
            raise BrokerRejected(f"Authentication failed: {data.get('errorText') or 'no access token returned'}")

        self._access_token = data["accessToken"]
        self._user_id = data.get("userId")
        self._token_expiry = _parse_expiry(data.get("expirationTime"))
        logger.info("Tradovate {} session established for user {}", self.environment, self._user_id)
        return data

    def get_contract_by_name(self, name: str) -> dict | None:
        contracts = self._call_with_retry(self._request, "GET", "/contract/find", params={"name": name})
        if isinstance(contracts, list):
            return contracts[0] if contracts else None
        return contracts or None

    def place_market_order(self, contract_id: int, action: str, quantity: int, account_id: int | None = None) -> OrderResult:
        return self._place_order(
            {
                "accountId": account_id or self.account_id,
                "contractId": contract_id,
                "action": action,
                "orderQty": quantity,
                "orderType": "Market",
                "isAutomated": True,
            }
        )

    def place_stop_order(
        self, contract_id: int, action: str, quantity: int, stop_price: float, account_id: int | None = None
    ) -> OrderResult:
        return self._place_order(
            {
                "accountId": account_id or self.account_id,
                "contractId": contract_id,
                "action": action,
                "orderQty": quantity,
                "orderType": "Stop",
                "stopPrice": stop_price,
                "isAutomated": True,
            }
        )

    def _place_order(self, order: dict) -> OrderResult:
        if order["orderQty"] <= 0:
            raise BrokerRejected("Quantity must be > 0 for order")
        data = self._request("POST", "/order/placeorder", json=order) or {}
        if not isinstance(data, dict):
            raise BrokerRejected(f"Unexpected order response: {data}")
        if data.get("failureReason") or data.get("failureText"):
            raise BrokerRejected(str(data.get("failureText") or data.get("failureReason")))
        order_id = data.get("orderId")
        if order_id is None:
            raise BrokerRejected(f"Order response missing orderId: {data}")
        logger.info(
            "Tradovate order {} placed: {} {} contract={} type={}",
            order_id,
            order["action"],
            order["orderQty"],
            order["contractId"],
            order["orderType"],
        )
        return OrderResult(order_id=int(order_id), raw=data)

    def _request(self, method: str, path: str, params: dict | None = None, json: dict | None = None) -> Any:
        self.ensure_session()
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BrokerRejected(f"Tradovate request {path} failed: {exc}") from exc
        if response.status_code == 401:
            self._access_token = None
        if response.status_code >= 400:
            raise BrokerRejected(f"Tradovate API error: {response.status_code} - {response.text}", response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BrokerRejected(f"Tradovate request {path} returned a non-JSON body: {response.text[:200]}") from exc

    def _call_with_retry(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        last_exc: Exception | None = None

        for attempt in range(1, settings.tradovate_max_retries + 1):
            try:
                return func(*args, **kwargs)
            except ConfigurationMissing:
                raise
            except BrokerRejected as exc:
                last_exc = exc
                category = self._classify_error(exc)
                logger.warning(
                    "Tradovate call failed [{}] attempt {}/{}: {}",
                    category,
                    attempt,
                    settings.tradovate_max_retries,
                    exc,
                )

                if attempt >= settings.tradovate_max_retries:
                    break

                if self._is_not_found_error(exc):
                    break

                delay = settings.tradovate_retry_base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(delay)

        raise BrokerRejected(f"Tradovate call failed after retries: {last_exc}") from last_exc

    @staticmethod
    def _classify_error(exc: Exception) -> str:
        text = str(exc).lower()
        if "timeout" in text or "timed out" in text:
            return "timeout"
        if "401" in text or "403" in text or "unauthorized" in text:
            return "auth"
        if "429" in text or "rate" in text:
            return "rate_limit"
        return "api"

    @staticmethod
    def _is_not_found_error(exc: Exception) -> bool:
        status = getattr(exc, "status_code", None)
        return status == 404 or "not found" in str(exc).lower()


def _parse_expiry(value: Any) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc) + timedelta(minutes=80)
