"""Shared fixtures: a seeded replica store and a fake remote gateway."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from calreplica.client.models import Account, Calendar
from calreplica.client.state import LocalStore
from calreplica.client.sync.retry import RetryPolicy
from tests.fakes import ACCOUNT, CALENDAR, FakeClock, FakeGateway


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalStore]:
    """Store holding one account with one enabled calendar."""
    s = LocalStore(tmp_path / "state.db")
    s.save_account(Account(id=ACCOUNT, email="alice@example.com", credential_handle=ACCOUNT))
    s.save_calendar(Calendar(account_id=ACCOUNT, id=CALENDAR, summary="Work", primary=True))
    yield s
    s.close()


@pytest.fixture
def gateway() -> FakeGateway:
    """Fake remote side listing the seeded calendar."""
    gw = FakeGateway()
    gw.add_calendar(ACCOUNT, CALENDAR, "Work", primary=True)
    return gw


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> RetryPolicy:
    """Retry policy without jitter so delays are exact."""
    return RetryPolicy(jitter=0.0)
