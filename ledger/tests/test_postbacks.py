"""
Unit Tests for Offerwall Postbacks

Tests cover:
1. Per-provider signature schemes
2. One credit per (provider, transaction)
3. Reversals / chargebacks, including partial claw-backs
"""

import hashlib
import hmac

import pytest

from ledger.config import Settings
from ledger.exceptions import InvalidState, SignatureInvalid, UserNotFound, ValidationFailed
from ledger.models import TransactionSource
from ledger.postbacks import OfferwallService, PostbackRegistry

KIWI_SECRET = "kiwi-secret"
CPX_SECRET = "cpx-secret"
TIMEWALL_SECRET = "tw-secret"
ACME_SECRET = "acme-secret"


def kiwiwall(sub_id="user-1", amount="1000", trans_id="kw-1", status="1"):
    raw = {"sub_id": sub_id, "amount": amount, "trans_id": trans_id, "status": status, "offer_id": "o-9"}
    raw["signature"] = hashlib.md5(f"{sub_id}:{amount}:{KIWI_SECRET}".encode()).hexdigest()
    return raw


def cpx(user_id="user-1", amount="250", trans_id="cpx-1", status="1"):
    return {
        "ext_user_id": user_id,
        "amount_local": amount,
        "trans_id": trans_id,
        "status": status,
        "hash": hashlib.md5(f"{user_id}-{CPX_SECRET}".encode()).hexdigest(),
    }


def timewall(user_id="user-1", amount="400", transaction_id="tw-1", kind="credit"):
    raw = {"userID": user_id, "currencyAmount": amount, "transactionID": transaction_id, "type": kind}
    message = "&".join(f"{k}={raw[k]}" for k in sorted(raw))
    raw["hash"] = hmac.new(TIMEWALL_SECRET.encode(), message.encode(), hashlib.sha256).hexdigest()
    return raw


@pytest.fixture
def offerwalls(ledger):
    settings = Settings(
        _env_file=None,
        KIWIWALL_SECRET=KIWI_SECRET,
        CPX_SECURE_HASH=CPX_SECRET,
        TIMEWALL_SECRET=TIMEWALL_SECRET,
        POSTBACK_SECRETS={"acme": ACME_SECRET},
    )
    return OfferwallService(ledger, PostbackRegistry.from_settings(settings))


class TestSignatures:
    """Tests for postback verification."""

    def test_kiwiwall_credit(self, ledger, make_user, offerwalls):
        make_user()

        result = offerwalls.handle("kiwiwall", kiwiwall())

        assert result.status == "credited"
        assert result.points == 1000
        assert ledger.get_user("user-1").category_points[TransactionSource.OFFERWALL] == 1000

    def test_bad_signature_changes_nothing(self, ledger, make_user, offerwalls):
        make_user()
        raw = kiwiwall()
        raw["amount"] = "99999"

        with pytest.raises(SignatureInvalid):
            offerwalls.handle("kiwiwall", raw)

        assert ledger.get_user("user-1").total_points == 0
        assert ledger.storage.query("offer_completions") == []

    def test_missing_signature(self, make_user, offerwalls):
        make_user()
        raw = kiwiwall()
        del raw["signature"]
        with pytest.raises(SignatureInvalid):
            offerwalls.handle("kiwiwall", raw)

    def test_unconfigured_provider_secret(self, ledger, make_user):
        make_user()
        service = OfferwallService(ledger, PostbackRegistry.from_settings(Settings(_env_file=None)))
        with pytest.raises(SignatureInvalid):
            service.handle("kiwiwall", kiwiwall())

    def test_unknown_provider(self, make_user, offerwalls):
        make_user()
        with pytest.raises(SignatureInvalid):
            offerwalls.handle("nowhere", kiwiwall())

    def test_cpx_surveys(self, ledger, make_user, offerwalls):
        make_user()

        result = offerwalls.handle("cpx", cpx())

        assert result.points == 250
        assert ledger.get_user("user-1").category_points[TransactionSource.SURVEY] == 250

    def test_timewall_signs_all_params(self, make_user, offerwalls):
        make_user()
        assert offerwalls.handle("timewall", timewall()).points == 400

        tampered = timewall(transaction_id="tw-2")
        tampered["currencyAmount"] = "4000"
        with pytest.raises(SignatureInvalid):
            offerwalls.handle("timewall", tampered)

    def test_generic_provider(self, make_user, offerwalls):
        make_user()
        raw = {"user_id": "user-1", "payout": "75", "transaction_id": "acme-1"}
        raw["signature"] = hmac.new(ACME_SECRET.encode(), b"acme-1", hashlib.sha256).hexdigest()

        assert offerwalls.handle("ACME", raw).points == 75

    def test_invalid_payout(self, make_user, offerwalls):
        make_user()
        with pytest.raises(ValidationFailed):
            offerwalls.handle("kiwiwall", kiwiwall(amount="lots"))


class TestCreditOnce:
    """Tests for duplicate postbacks."""

    def test_duplicate_postback(self, ledger, make_user, offerwalls):
        make_user()
        offerwalls.handle("kiwiwall", kiwiwall())

        again = offerwalls.handle("kiwiwall", kiwiwall())

        assert again.points == 0
        assert again.message == "Already processed"
        assert ledger.get_user("user-1").total_points == 1000

    def test_transaction_claimed_by_another_user(self, ledger, make_user, offerwalls):
        make_user("user-1")
        make_user("user-2")
        offerwalls.handle("kiwiwall", kiwiwall())

        with pytest.raises(InvalidState):
            offerwalls.handle("kiwiwall", kiwiwall(sub_id="user-2"))
        assert ledger.get_user("user-2").total_points == 0

    def test_unknown_user(self, ledger, offerwalls):
        with pytest.raises(UserNotFound):
            offerwalls.handle("kiwiwall", kiwiwall(sub_id="ghost"))
        assert ledger.storage.query("offer_completions") == []


class TestReversal:
    """Tests for chargebacks."""

    def test_reversal_claws_back(self, ledger, make_user, offerwalls):
        make_user()
        offerwalls.handle("kiwiwall", kiwiwall())

        result = offerwalls.handle("kiwiwall", kiwiwall(status="2"))

        assert result.status == "reversed"
        assert result.points == -1000
        assert ledger.get_user("user-1").total_points == 0
        assert ledger.reconcile("user-1").is_balanced

    def test_reversal_is_applied_once(self, ledger, make_user, offerwalls):
        make_user(balance=5_000)
        offerwalls.handle("kiwiwall", kiwiwall())
        offerwalls.handle("kiwiwall", kiwiwall(status="2"))

        again = offerwalls.handle("kiwiwall", kiwiwall(status="2"))

        assert again.message == "Already reversed"
        assert ledger.get_user("user-1").total_points == 5_000

    def test_partial_clawback_never_goes_negative(self, ledger, make_user, offerwalls):
        make_user()
        offerwalls.handle("kiwiwall", kiwiwall())
        ledger.apply_delta("user-1", -700, TransactionSource.ADJUSTMENT)

        result = offerwalls.handle("kiwiwall", kiwiwall(status="2"))

        assert result.points == -300
        assert ledger.get_user("user-1").total_points == 0
        completion = ledger.storage.get("offer_completions", "kiwiwall:kw-1")
        assert completion["clawed_back"] == 300
        assert completion["shortfall"] == 700
        assert ledger.reconcile("user-1").is_balanced

    def test_reversal_without_credit_is_ignored(self, ledger, make_user, offerwalls):
        make_user()

        result = offerwalls.handle("kiwiwall", kiwiwall(status="2"))

        assert result.status == "ignored"
        assert ledger.storage.query("transactions") == []

    def test_timewall_chargeback(self, ledger, make_user, offerwalls):
        make_user()
        offerwalls.handle("timewall", timewall())
        assert offerwalls.handle("timewall", timewall(kind="chargeback")).status == "reversed"
        assert ledger.get_user("user-1").total_points == 0
