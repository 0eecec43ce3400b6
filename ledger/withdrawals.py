"""
Withdrawal lifecycle: pending -> completed | rejected.

Points leave the balance when the request is made. Approval only finalises
(optionally paying out through the gateway); rejection refunds the exact
amount. Both transitions are conditional on the record still being pending.
"""

import logging
from typing import Optional
from uuid import uuid4

from .exceptions import (
    InsufficientBalance,
    InvalidState,
    PayoutGatewayFailure,
    ValidationFailed,
    WithdrawalNotFound,
)
from .limits import WithdrawalPolicy
from .models import (
    CreateWithdrawalRequest,
    ProcessWithdrawalRequest,
    TransactionSource,
    Withdrawal,
    WithdrawalAction,
    WithdrawalMethod,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .notifications import LoggingNotifier, Notifier, notify_withdrawal_processed
from .payouts import PayoutGateway, PayoutResult
from .service import LedgerService, user_scope
from .storage import UnitOfWork

logger = logging.getLogger(__name__)

AUTO_PAYOUT_METHODS = (WithdrawalMethod.AIRTIME, WithdrawalMethod.GIFT_CARD)

REQUIRED_DESTINATION = {
    WithdrawalMethod.AIRTIME: ("phone_number",),
    WithdrawalMethod.MOBILE_MONEY: ("phone_number",),
    WithdrawalMethod.GIFT_CARD: ("email",),
    WithdrawalMethod.BANK_TRANSFER: ("bank_name", "account_number", "account_name"),
}


def withdrawal_scope(withdrawal_id: str) -> str:
    return f"withdrawal:{withdrawal_id}"


class WithdrawalService:
    def __init__(
        self,
        ledger: LedgerService,
        gateway: Optional[PayoutGateway] = None,
        notifier: Optional[Notifier] = None,
        policy: Optional[WithdrawalPolicy] = None,
        auto_payments: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.policy = policy or WithdrawalPolicy(points_per_dollar=ledger.settings.POINTS_PER_DOLLAR)
        self.auto_payments = ledger.settings.AUTO_PAYMENTS_ENABLED if auto_payments is None else auto_payments

    # ---- request ---------------------------------------------------------

    def request_withdrawal(self, request: CreateWithdrawalRequest) -> WithdrawalResponse:
        for field in REQUIRED_DESTINATION[request.method]:
            if not getattr(request, field):
                raise ValidationFailed(f"{field} is required for {request.method.value} withdrawals")

        now = self.ledger.clock()
        with self.storage.unit_of_work(user_scope(request.user_id)) as uow:
            user = self.ledger.load_user(uow, request.user_id)
            if user.total_points < request.amount:
                raise InsufficientBalance(
                    f"Insufficient points: balance {user.total_points}, requested {request.amount}"
                )

            history = [Withdrawal(**w) for w in uow.query("withdrawals", user_id=user.id)]
            self.policy.check(user, request.amount, history, now)

            withdrawal_id = str(uuid4())
            txn = self.ledger.apply_delta_in(
                uow, user, -request.amount, TransactionSource.WITHDRAWAL, withdrawal_id,
                description=f"Withdrawal via {request.method.value}",
                metadata={"withdrawal_id": withdrawal_id},
            )
            withdrawal = Withdrawal(
                id=withdrawal_id,
                amount_usd=float(self.policy.to_usd(request.amount)),
                debit_transaction_id=txn.id,
                created_at=now,
                **request.model_dump(),
            )
            uow.put("withdrawals", withdrawal.id, withdrawal.model_dump(mode="json"))

        logger.info("Withdrawal %s requested by %s: %d points via %s",
                    withdrawal.id, user.id, withdrawal.amount, withdrawal.method.value)
        return WithdrawalResponse(
            withdrawal=withdrawal,
            message="Withdrawal request submitted",
            new_balance=user.total_points,
        )

    # ---- admin decisions -------------------------------------------------

    def process(self, request: ProcessWithdrawalRequest) -> WithdrawalResponse:
        if request.action == WithdrawalAction.APPROVE:
            return self.approve(request.withdrawal_id, request.admin_id)
        return self.reject(request.withdrawal_id, request.rejection_reason, request.admin_id)

    def _load_pending(self, uow: UnitOfWork, withdrawal_id: str) -> Withdrawal:
        data = uow.get("withdrawals", withdrawal_id)
        if data is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        withdrawal = Withdrawal(**data)
        if not withdrawal.can_process():
            raise InvalidState(f"Withdrawal {withdrawal_id} is {withdrawal.status.value}, not pending")
        return withdrawal

    def _wants_auto_payout(self, withdrawal: Withdrawal) -> bool:
        return self.auto_payments and self.gateway is not None and withdrawal.method in AUTO_PAYOUT_METHODS

    def _pay_out(self, withdrawal: Withdrawal) -> PayoutResult:
        destination = {
            "phone_number": withdrawal.phone_number,
            "country_code": withdrawal.country_code,
            "email": withdrawal.email,
            "product_id": withdrawal.product_id,
            "reference": f"WD-{withdrawal.id}",
        }
        try:
            return self.gateway.send_payout(withdrawal.method, destination, withdrawal.amount_usd)
        except Exception as e:
            # Anything unexpected from the gateway is a failed payout, never a success.
            logger.exception("Payout gateway raised for withdrawal %s", withdrawal.id)
            return PayoutResult(success=False, message=str(e) or type(e).__name__)

    def approve(self, withdrawal_id: str, admin_id: Optional[str] = None) -> WithdrawalResponse:
        failure = None
        # The withdrawal's scope stays locked across the payout call so two
        # admins can never pay the same request twice.
        with self.storage.unit_of_work(withdrawal_scope(withdrawal_id)) as uow:
            withdrawal = self._load_pending(uow, withdrawal_id)

            result = None
            if self._wants_auto_payout(withdrawal):
                result = self._pay_out(withdrawal)
                if not result.success:
                    failure = result.message or "Payout failed"
                    withdrawal.last_error = failure
                    uow.put("withdrawals", withdrawal.id, withdrawal.model_dump(mode="json"))

            if failure is None:
                withdrawal.status = WithdrawalStatus.COMPLETED
                withdrawal.processed_at = self.ledger.clock()
                withdrawal.processed_by = admin_id or "admin"
                withdrawal.last_error = None
                if result is not None:
                    withdrawal.auto_payout = True
                    withdrawal.payout_reference = result.transaction_id
                    withdrawal.delivered_amount = result.delivered_amount
                    withdrawal.delivered_currency = result.delivered_currency
                uow.put("withdrawals", withdrawal.id, withdrawal.model_dump(mode="json"))

        if failure is not None:
            logger.error("Payout for withdrawal %s failed, left pending: %s", withdrawal_id, failure)
            raise PayoutGatewayFailure(f"Payout failed: {failure}")

        logger.info("Withdrawal %s approved by %s%s", withdrawal.id, withdrawal.processed_by,
                    " (auto payout)" if withdrawal.auto_payout else "")
        notify_withdrawal_processed(self.notifier, withdrawal)
        return WithdrawalResponse(withdrawal=withdrawal, message="Withdrawal approved")

    def reject(self, withdrawal_id: str, reason: Optional[str] = None, admin_id: Optional[str] = None) -> WithdrawalResponse:
        data = self.storage.get("withdrawals", withdrawal_id)
        if data is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        reason = reason or "Request rejected by admin"

        with self.storage.unit_of_work(withdrawal_scope(withdrawal_id), user_scope(data["user_id"])) as uow:
            withdrawal = self._load_pending(uow, withdrawal_id)
            user = self.ledger.load_user(uow, withdrawal.user_id)
            txn = self.ledger.apply_delta_in(
                uow, user, withdrawal.amount, TransactionSource.WITHDRAWAL_REFUND, withdrawal.id,
                description=f"Withdrawal rejected: {reason}",
                metadata={"withdrawal_id": withdrawal.id},
            )
            withdrawal.status = WithdrawalStatus.REJECTED
            withdrawal.processed_at = self.ledger.clock()
            withdrawal.processed_by = admin_id or "admin"
            withdrawal.rejection_reason = reason
            withdrawal.refund_transaction_id = txn.id
            uow.put("withdrawals", withdrawal.id, withdrawal.model_dump(mode="json"))

        logger.info("Withdrawal %s rejected, %d points refunded to %s", withdrawal.id, withdrawal.amount, user.id)
        notify_withdrawal_processed(self.notifier, withdrawal)
        return WithdrawalResponse(
            withdrawal=withdrawal,
            message="Withdrawal rejected and points refunded",
            new_balance=user.total_points,
        )

    # ---- queries ---------------------------------------------------------

    def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        data = self.storage.get("withdrawals", withdrawal_id)
        if data is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return Withdrawal(**data)

    def list_withdrawals(self, user_id: str, limit: int = 20) -> list[Withdrawal]:
        rows = [Withdrawal(**w) for w in self.storage.query("withdrawals", user_id=user_id)]
        rows.sort(key=lambda w: w.created_at, reverse=True)
        return rows[:limit]

    def list_pending(self) -> list[Withdrawal]:
        rows = [Withdrawal(**w) for w in self.storage.query("withdrawals", status=WithdrawalStatus.PENDING.value)]
        rows.sort(key=lambda w: w.created_at)
        return rows
