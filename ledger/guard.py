import logging
from dataclasses import dataclass
from typing import Optional

from .models import RewardRecord
from .storage import InMemoryStorage, UnitOfWork, storage_errors

logger = logging.getLogger(__name__)

COLLECTION = "reward_records"


def reward_key(user_id: str, action_id: str) -> str:
    return f"{user_id}_{action_id}"


@dataclass(frozen=True)
class GuardResult:
    already_credited: bool
    points_earned: int = 0
    record: Optional[RewardRecord] = None


class IdempotencyGuard:
    """
    Answers "has this (user, action) already been rewarded?".

    The existence of a record is the only signal: a first submission that paid
    nothing (a wrong quiz answer, say) still closes the action id for good.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def check(self, key: str) -> GuardResult:
        # Fail closed: an unreadable record must never turn into a credit.
        with storage_errors(f"read of reward record {key}"):
            data = self.storage.get(COLLECTION, key)
        if data is None:
            return GuardResult(already_credited=False)
        record = RewardRecord(**data)
        return GuardResult(already_credited=True, points_earned=record.points_earned, record=record)

    def claim(self, uow: UnitOfWork, record: RewardRecord) -> GuardResult:
        """Insert-if-absent inside the caller's unit of work."""
        existing, created = uow.insert_if_absent(COLLECTION, record.key, record.model_dump(mode="json"))
        if created:
            return GuardResult(already_credited=False, record=record)
        prior = RewardRecord(**existing)
        logger.info("Reward %s already recorded (%d points), not crediting again", record.key, prior.points_earned)
        return GuardResult(already_credited=True, points_earned=prior.points_earned, record=prior)
