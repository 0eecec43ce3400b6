"""
Payout gateway used when withdrawals are approved with auto payments on.

Reloadly handles both airtime top-ups and gift-card orders. The gateway never
raises for provider or network trouble: every outcome comes back as a
PayoutResult and the caller decides what a failure means.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

from .config import Settings
from .models import WithdrawalMethod

logger = logging.getLogger(__name__)

AUTH_URL = "https://auth.reloadly.com/oauth/token"
TOPUPS_URL = "https://topups.reloadly.com"
TOPUPS_SANDBOX_URL = "https://topups-sandbox.reloadly.com"
GIFTCARDS_URL = "https://giftcards.reloadly.com"
GIFTCARDS_SANDBOX_URL = "https://giftcards-sandbox.reloadly.com"


@dataclass
class PayoutResult:
    success: bool
    transaction_id: Optional[str] = None
    delivered_amount: Optional[float] = None
    delivered_currency: Optional[str] = None
    message: Optional[str] = None


def mask_value(val: Optional[str]) -> str:
    if not val:
        return ""
    s = str(val)
    if "@" in s:
        name, _, domain = s.partition("@")
        return (name[:2] + "***@" + domain) if name else "***@" + domain
    if s.lstrip("+").isdigit() and len(s) >= 7:
        return f"{s[:3]}***{s[-4:]}"
    return "***"


class PayoutGateway:
    def send_payout(self, method: WithdrawalMethod, destination: dict, amount_usd: float) -> PayoutResult:
        raise NotImplementedError


class ReloadlyGateway(PayoutGateway):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        sandbox: bool = True,
        timeout: tuple[float, float] = (5, 25),
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.sandbox = sandbox
        self.timeout = timeout
        self.session = session or requests.Session()
        self._tokens: dict[str, tuple[str, float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReloadlyGateway":
        return cls(
            client_id=settings.RELOADLY_CLIENT_ID,
            client_secret=settings.RELOADLY_CLIENT_SECRET,
            sandbox=settings.RELOADLY_SANDBOX,
            timeout=settings.payout_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def topups_url(self) -> str:
        return TOPUPS_SANDBOX_URL if self.sandbox else TOPUPS_URL

    @property
    def giftcards_url(self) -> str:
        return GIFTCARDS_SANDBOX_URL if self.sandbox else GIFTCARDS_URL

    def _access_token(self, audience: str) -> str:
        cached = self._tokens.get(audience)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        resp = self.session.post(
            AUTH_URL,
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
                "audience": audience,
            },
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise PayoutError(f"Reloadly auth failed ({resp.status_code})")
        body = resp.json()
        # Refresh a minute before the provider expires the token.
        expires_at = time.monotonic() + int(body.get("expires_in", 0)) - 60
        self._tokens[audience] = (body["access_token"], expires_at)
        return body["access_token"]

    def send_payout(self, method: WithdrawalMethod, destination: dict, amount_usd: float) -> PayoutResult:
        if not self.is_configured:
            return PayoutResult(success=False, message="Reloadly credentials not configured")
        try:
            if method == WithdrawalMethod.AIRTIME:
                return self._send_topup(destination, amount_usd)
            if method == WithdrawalMethod.GIFT_CARD:
                return self._order_gift_card(destination, amount_usd)
            return PayoutResult(success=False, message=f"Automatic payout not supported for {method.value}")
        except requests.exceptions.Timeout:
            logger.warning("Reloadly %s payout timed out", method.value)
            return PayoutResult(success=False, message="Payout provider timed out")
        except requests.exceptions.RequestException as e:
            logger.warning("Reloadly %s payout network error: %s", method.value, e)
            return PayoutResult(success=False, message="Payout provider unreachable")
        except PayoutError as e:
            logger.warning("Reloadly %s payout failed: %s", method.value, e)
            return PayoutResult(success=False, message=str(e))

    def _send_topup(self, destination: dict, amount_usd: float) -> PayoutResult:
        phone = str(destination.get("phone_number") or "").replace(" ", "").lstrip("+")
        country = destination.get("country_code") or "NG"
        if not phone:
            return PayoutResult(success=False, message="Phone number required for airtime")

        token = self._access_token(self.topups_url)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/com.reloadly.topups-v1+json",
        }

        detect = self.session.get(
            f"{self.topups_url}/operators/auto-detect/phone/{phone}/countries/{country}",
            headers=headers,
            timeout=self.timeout,
        )
        if detect.status_code != 200:
            return PayoutResult(success=False, message="Could not detect mobile operator for this number")
        operator_id = detect.json().get("operatorId")

        logger.info("Sending $%.2f airtime to %s (%s)", amount_usd, mask_value(phone), country)
        resp = self.session.post(
            f"{self.topups_url}/topups",
            headers=headers,
            json={
                "operatorId": operator_id,
                "amount": amount_usd,
                "useLocalAmount": False,
                "recipientPhone": {"countryCode": country, "number": phone},
                "customIdentifier": destination.get("reference"),
            },
            timeout=self.timeout,
        )
        body = _safe_json(resp)
        if resp.status_code != 200:
            return PayoutResult(success=False, message=body.get("message") or "Top-up failed")
        return PayoutResult(
            success=True,
            transaction_id=str(body.get("transactionId")),
            delivered_amount=body.get("deliveredAmount"),
            delivered_currency=body.get("deliveredAmountCurrencyCode"),
            message="Airtime delivered",
        )

    def _order_gift_card(self, destination: dict, amount_usd: float) -> PayoutResult:
        email = destination.get("email")
        product_id = destination.get("product_id")
        if not email or not product_id:
            return PayoutResult(success=False, message="Email and product id required for gift cards")

        token = self._access_token(self.giftcards_url)
        logger.info("Ordering $%.2f gift card for %s", amount_usd, mask_value(email))
        resp = self.session.post(
            f"{self.giftcards_url}/orders",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/com.reloadly.giftcards-v1+json",
            },
            json={
                "productId": product_id,
                "quantity": 1,
                "unitPrice": amount_usd,
                "recipientEmail": email,
                "customIdentifier": destination.get("reference"),
            },
            timeout=self.timeout,
        )
        body = _safe_json(resp)
        if resp.status_code not in (200, 201):
            return PayoutResult(success=False, message=body.get("message") or "Gift card order failed")
        return PayoutResult(
            success=True,
            transaction_id=str(body.get("transactionId")),
            delivered_amount=body.get("amount"),
            delivered_currency=body.get("currencyCode"),
            message=f"Gift card sent to {mask_value(email)}",
        )


class PayoutError(Exception):
    pass


def _safe_json(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"raw": getattr(resp, "text", "")}
    return body if isinstance(body, dict) else {"raw": body}
