import logging

from .models import Withdrawal, WithdrawalStatus
from .payouts import mask_value

logger = logging.getLogger(__name__)


class Notifier:
    def withdrawal_processed(self, withdrawal: Withdrawal) -> None:
        raise NotImplementedError


def withdrawal_message(withdrawal: Withdrawal) -> str:
    if withdrawal.status == WithdrawalStatus.COMPLETED:
        return f"Your withdrawal of {withdrawal.amount} points has been processed"
    return (
        f"Your withdrawal of {withdrawal.amount} points was rejected "
        f"({withdrawal.rejection_reason}); the points are back in your balance"
    )


class LoggingNotifier(Notifier):
    """Default notifier: logs the message that would be sent."""

    def withdrawal_processed(self, withdrawal: Withdrawal) -> None:
        message = withdrawal_message(withdrawal)
        logger.info("Notify %s <%s>: %s", withdrawal.user_id, mask_value(withdrawal.email), message)


def notify_withdrawal_processed(notifier: Notifier, withdrawal: Withdrawal) -> None:
    # The ledger change has already committed; delivery problems must not undo it.
    try:
        notifier.withdrawal_processed(withdrawal)
    except Exception:
        logger.exception("Failed to notify user %s about withdrawal %s", withdrawal.user_id, withdrawal.id)
