"""Tests for the Reloadly payout gateway, against a fake HTTP session."""

import pytest
import requests

from ledger.models import WithdrawalMethod
from ledger.payouts import ReloadlyGateway, mask_value

TOKEN = {"access_token": "tok-1", "expires_in": 3600}


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = "" if body is None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    """Replays queued responses (or raises queued exceptions) in call order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)


def gateway(session, **kwargs):
    return ReloadlyGateway("client", "secret", sandbox=True, timeout=(5.0, 25.0), session=session, **kwargs)


AIRTIME_DESTINATION = {"phone_number": "+234 801 234 5678", "country_code": "NG", "reference": "WD-1"}


class TestAirtime:
    def test_successful_topup(self):
        session = FakeSession(
            FakeResponse(200, TOKEN),
            FakeResponse(200, {"operatorId": 341}),
            FakeResponse(200, {"transactionId": 9001, "deliveredAmount": 1500, "deliveredAmountCurrencyCode": "NGN"}),
        )

        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)

        assert result.success
        assert result.transaction_id == "9001"
        assert result.delivered_currency == "NGN"
        _, detect_url, _ = session.calls[1]
        assert detect_url.endswith("/operators/auto-detect/phone/2348012345678/countries/NG")
        _, topup_url, topup = session.calls[2]
        assert topup_url == "https://topups-sandbox.reloadly.com/topups"
        assert topup["json"]["operatorId"] == 341
        assert topup["json"]["customIdentifier"] == "WD-1"
        assert all(call[2]["timeout"] == (5.0, 25.0) for call in session.calls)

    def test_token_is_cached(self):
        session = FakeSession(
            FakeResponse(200, TOKEN),
            FakeResponse(200, {"operatorId": 1}),
            FakeResponse(200, {"transactionId": 1}),
            FakeResponse(200, {"operatorId": 1}),
            FakeResponse(200, {"transactionId": 2}),
        )
        gw = gateway(session)

        gw.send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        gw.send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)

        auth_calls = [c for c in session.calls if c[1].startswith("https://auth.reloadly.com")]
        assert len(auth_calls) == 1

    def test_operator_not_detected(self):
        session = FakeSession(FakeResponse(200, TOKEN), FakeResponse(404, {"message": "not found"}))
        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        assert not result.success

    def test_provider_error_message_is_kept(self):
        session = FakeSession(
            FakeResponse(200, TOKEN),
            FakeResponse(200, {"operatorId": 1}),
            FakeResponse(400, {"message": "Insufficient balance on account"}),
        )
        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        assert not result.success
        assert result.message == "Insufficient balance on account"


class TestFailures:
    def test_timeout(self):
        session = FakeSession(requests.exceptions.Timeout("read timed out"))
        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        assert not result.success
        assert result.message == "Payout provider timed out"

    def test_connection_error(self):
        session = FakeSession(requests.exceptions.ConnectionError("refused"))
        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        assert not result.success
        assert result.message == "Payout provider unreachable"

    def test_auth_rejected(self):
        session = FakeSession(FakeResponse(401, {"message": "bad client"}))
        result = gateway(session).send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0)
        assert not result.success
        assert "auth failed" in result.message

    def test_not_configured(self):
        session = FakeSession()
        gw = ReloadlyGateway("", "", session=session)
        assert not gw.is_configured
        assert not gw.send_payout(WithdrawalMethod.AIRTIME, AIRTIME_DESTINATION, 1.0).success
        assert session.calls == []

    def test_manual_methods_are_unsupported(self):
        result = gateway(FakeSession()).send_payout(WithdrawalMethod.BANK_TRANSFER, {}, 1.0)
        assert not result.success


class TestGiftCards:
    def test_order(self):
        session = FakeSession(
            FakeResponse(200, TOKEN),
            FakeResponse(200, {"transactionId": 77, "amount": 1.0, "currencyCode": "USD"}),
        )
        result = gateway(session).send_payout(
            WithdrawalMethod.GIFT_CARD, {"email": "ada@example.com", "product_id": 5}, 1.0,
        )
        assert result.success
        assert result.transaction_id == "77"
        _, url, kwargs = session.calls[1]
        assert url == "https://giftcards-sandbox.reloadly.com/orders"
        assert kwargs["json"]["recipientEmail"] == "ada@example.com"

    def test_product_required(self):
        session = FakeSession()
        result = gateway(session).send_payout(WithdrawalMethod.GIFT_CARD, {"email": "ada@example.com"}, 1.0)
        assert not result.success
        assert session.calls == []

    def test_non_json_error_body(self):
        session = FakeSession(FakeResponse(200, TOKEN), FakeResponse(500, None))
        result = gateway(session).send_payout(
            WithdrawalMethod.GIFT_CARD, {"email": "ada@example.com", "product_id": 5}, 1.0,
        )
        assert not result.success
        assert result.message == "Gift card order failed"


@pytest.mark.parametrize("value,masked", [
    ("+2348012345678", "+23***5678"),
    ("ada@example.com", "ad***@example.com"),
    ("GTB", "***"),
    (None, ""),
])
def test_mask_value(value, masked):
    assert mask_value(value) == masked
