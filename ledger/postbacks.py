"""
Offerwall and survey postbacks.

Each provider signs its callbacks differently, so verification sits behind a
single PostbackVerifier interface and the provider name on the request picks
the strategy. A postback is only treated as a reward event after its
signature checks out; a provider without a configured secret is rejected.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import Settings
from .exceptions import InvalidState, SignatureInvalid, ValidationFailed
from .models import OfferCompletion, OfferStatus, PostbackResult, TransactionSource
from .service import LedgerService, user_scope

logger = logging.getLogger(__name__)

COMPLETED = "completed"
REVERSED = "reversed"

SIGNATURE_FIELDS = ("signature", "sig", "hash", "verifier")


def _first(raw: dict, names: tuple) -> Optional[str]:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def _md5(text: str) -> str:
    return hashlib.md5(text.encode()).hexdigest()


def _hmac_sha256(secret: str, text: str) -> str:
    return hmac.new(secret.encode(), text.encode(), hashlib.sha256).hexdigest()


@dataclass
class Postback:
    provider: str
    user_id: str
    transaction_id: str
    payout: int
    status: str
    offer_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PostbackVerifier:
    name = "generic"
    source = TransactionSource.OFFERWALL

    user_fields = ("user_id", "userId", "uid", "sub_id", "subid")
    payout_fields = ("payout", "amount", "points")
    transaction_fields = ("transaction_id", "transId", "trans_id", "txid")
    offer_fields = ("offer_id", "offerId")
    status_field = "status"
    reversal_values = ("reversed", "chargeback", "2")

    def __init__(self, secret: str):
        self.secret = secret

    def signature(self, raw: dict) -> Optional[str]:
        return _first(raw, SIGNATURE_FIELDS)

    def expected_signature(self, raw: dict) -> str:
        return _hmac_sha256(self.secret, _first(raw, self.transaction_fields) or "")

    def verify(self, raw: dict) -> bool:
        received = self.signature(raw)
        if not self.secret or not received:
            return False
        return hmac.compare_digest(self.expected_signature(raw).lower(), received.lower())

    def parse(self, raw: dict) -> Postback:
        user_id = _first(raw, self.user_fields)
        transaction_id = _first(raw, self.transaction_fields)
        payout = _first(raw, self.payout_fields)
        if not user_id or not transaction_id or payout is None:
            raise ValidationFailed("Postback is missing user, transaction or payout")
        try:
            points = int(float(payout))
        except (ValueError, OverflowError):
            raise ValidationFailed(f"Invalid payout {payout!r}")
        if points <= 0:
            raise ValidationFailed("Payout must be positive")
        status = str(raw.get(self.status_field, "")).lower()
        return Postback(
            provider=self.name,
            user_id=user_id,
            transaction_id=transaction_id,
            payout=points,
            status=REVERSED if status in self.reversal_values else COMPLETED,
            offer_id=_first(raw, self.offer_fields),
            raw=raw,
        )


class KiwiwallVerifier(PostbackVerifier):
    # md5("{sub_id}:{amount}:{secret}")
    name = "kiwiwall"
    user_fields = ("sub_id", "subid", "uid", "user_id")
    payout_fields = ("amount", "payout", "points")
    transaction_fields = ("trans_id", "transaction_id", "transId")

    def expected_signature(self, raw: dict) -> str:
        return _md5(f"{_first(raw, self.user_fields)}:{_first(raw, self.payout_fields)}:{self.secret}")


class CpxVerifier(PostbackVerifier):
    # md5("{user_id}-{secure_hash}")
    name = "cpx"
    source = TransactionSource.SURVEY
    user_fields = ("ext_user_id", "user_id", "uid")
    payout_fields = ("amount_local", "amount", "payout")
    transaction_fields = ("trans_id", "transaction_id")

    def expected_signature(self, raw: dict) -> str:
        return _md5(f"{_first(raw, self.user_fields)}-{self.secret}")


class TimewallVerifier(PostbackVerifier):
    # HMAC-SHA256 over the sorted "key=value" pairs, signature fields excluded
    name = "timewall"
    user_fields = ("userID", "user_id", "userId")
    payout_fields = ("currencyAmount", "amount", "payout")
    transaction_fields = ("transactionID", "transaction_id", "transId")
    status_field = "type"
    reversal_values = ("chargeback", "reversed")

    def expected_signature(self, raw: dict) -> str:
        keys = sorted(k for k in raw if k not in SIGNATURE_FIELDS and k != "provider")
        return _hmac_sha256(self.secret, "&".join(f"{k}={raw[k]}" for k in keys))


class PostbackRegistry:
    def __init__(self, verifiers: dict[str, PostbackVerifier]):
        self.verifiers = {name.lower(): v for name, v in verifiers.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostbackRegistry":
        verifiers = {
            "kiwiwall": KiwiwallVerifier(settings.KIWIWALL_SECRET),
            "cpx": CpxVerifier(settings.CPX_SECURE_HASH),
            "timewall": TimewallVerifier(settings.TIMEWALL_SECRET),
        }
        for provider, secret in settings.POSTBACK_SECRETS.items():
            verifier = PostbackVerifier(secret)
            verifier.name = provider.lower()
            verifiers.setdefault(provider.lower(), verifier)
        return cls(verifiers)

    def get(self, provider: str) -> PostbackVerifier:
        verifier = self.verifiers.get((provider or "").lower())
        if verifier is None:
            raise SignatureInvalid(f"Unknown postback provider {provider!r}")
        return verifier


class OfferwallService:
    def __init__(self, ledger: LedgerService, registry: PostbackRegistry):
        self.ledger = ledger
        self.storage = ledger.storage
        self.registry = registry

    def handle(self, provider: str, raw: dict) -> PostbackResult:
        verifier = self.registry.get(provider)
        if not verifier.verify(raw):
            logger.warning("Rejected %s postback with invalid signature (txn %s)",
                           verifier.name, _first(raw, verifier.transaction_fields))
            raise SignatureInvalid("Invalid signature")

        postback = verifier.parse(raw)
        if postback.status == REVERSED:
            return self._reverse(postback, verifier.source)
        return self._credit(postback, verifier.source)

    @staticmethod
    def completion_id(postback: Postback) -> str:
        return f"{postback.provider}:{postback.transaction_id}"

    def _credit(self, postback: Postback, source: TransactionSource) -> PostbackResult:
        cid = self.completion_id(postback)
        now = self.ledger.clock()
        with self.storage.unit_of_work(user_scope(postback.user_id), f"offer:{cid}") as uow:
            existing = uow.get("offer_completions", cid)
            if existing is not None:
                completion = OfferCompletion(**existing)
                if completion.user_id != postback.user_id:
                    logger.warning("Transaction %s already belongs to user %s, not crediting %s",
                                   cid, completion.user_id, postback.user_id)
                    raise InvalidState(f"Transaction {postback.transaction_id} belongs to another user")
                return self._result(postback, completion.status.value, 0, "Already processed")

            user = self.ledger.load_user(uow, postback.user_id)
            claim, txn = self.ledger.credit_once_in(
                uow, user, f"offer:{cid}", source, postback.payout,
                description=f"{postback.provider} offer completed",
                metadata={
                    "provider": postback.provider,
                    "external_transaction_id": postback.transaction_id,
                    "offer_id": postback.offer_id,
                },
            )
            completion = OfferCompletion(
                id=cid,
                provider=postback.provider,
                transaction_id=postback.transaction_id,
                user_id=user.id,
                offer_id=postback.offer_id,
                payout=postback.payout,
                status=OfferStatus.CREDITED,
                created_at=now,
                updated_at=now,
            )
            uow.put("offer_completions", cid, completion.model_dump(mode="json"))

        if claim.already_credited:
            return self._result(postback, OfferStatus.CREDITED.value, 0, "Already processed")
        return self._result(postback, OfferStatus.CREDITED.value, txn.amount, "Credited")

    def _reverse(self, postback: Postback, source: TransactionSource) -> PostbackResult:
        cid = self.completion_id(postback)
        with self.storage.unit_of_work(user_scope(postback.user_id), f"offer:{cid}") as uow:
            existing = uow.get("offer_completions", cid)
            if existing is None:
                logger.info("Reversal for unknown %s transaction %s ignored", postback.provider, postback.transaction_id)
                return self._result(postback, "ignored", 0, "Nothing to reverse")
            completion = OfferCompletion(**existing)
            if completion.user_id != postback.user_id:
                raise InvalidState(f"Transaction {postback.transaction_id} belongs to another user")
            if completion.status == OfferStatus.REVERSED:
                return self._result(postback, completion.status.value, 0, "Already reversed")

            user = self.ledger.load_user(uow, completion.user_id)
            # The balance never goes negative: claw back what is left and
            # record the remainder on the completion.
            clawback = min(completion.payout, user.total_points)
            if clawback > 0:
                self.ledger.apply_delta_in(
                    uow, user, -clawback, source, f"offer:{cid}",
                    description=f"{postback.provider} offer reversed",
                    metadata={"provider": postback.provider, "reason": "reversal"},
                )
            completion.status = OfferStatus.REVERSED
            completion.clawed_back = clawback
            completion.shortfall = completion.payout - clawback
            completion.updated_at = self.ledger.clock()
            uow.put("offer_completions", cid, completion.model_dump(mode="json"))

        if completion.shortfall:
            logger.warning("Reversal of %s left %d points unrecovered from %s", cid, completion.shortfall, user.id)
        return self._result(postback, OfferStatus.REVERSED.value, -clawback, "Reversed")

    @staticmethod
    def _result(postback: Postback, status: str, points: int, message: str) -> PostbackResult:
        return PostbackResult(
            provider=postback.provider,
            transaction_id=postback.transaction_id,
            status=status,
            points=points,
            message=message,
        )
