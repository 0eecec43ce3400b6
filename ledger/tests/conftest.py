from datetime import datetime, timedelta, timezone

import pytest

from ledger.config import Settings
from ledger.models import CreateUserRequest, TransactionSource
from ledger.service import LedgerService, user_scope
from ledger.storage import InMemoryStorage

# A Wednesday morning, outside every happy-hour window.
NOW = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def ledger(clock, settings):
    return LedgerService(storage=InMemoryStorage(lock_timeout=2.0), settings=settings, clock=clock)


@pytest.fixture
def make_user(ledger):
    """Register a user, optionally seed a balance and overwrite stored fields."""

    def _make(user_id: str = "user-1", balance: int = 0, **fields):
        ledger.register_user(CreateUserRequest(user_id=user_id))
        if balance:
            ledger.apply_delta(user_id, balance, TransactionSource.ADJUSTMENT, description="Opening balance")
        if fields:
            with ledger.storage.unit_of_work(user_scope(user_id)) as uow:
                uow.update("users", user_id, **fields)
        return ledger.get_user(user_id)

    return _make
