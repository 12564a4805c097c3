from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from beacon.lifecycle import PlayerLifecycle
from beacon.resolver import OutcomeResolver
from beacon.tests.helpers import FakeClock
from shared.db.connection import Database
from shared.db.gateway import SqlitePersistenceGateway

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "beacon.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def gateway(db: Database) -> SqlitePersistenceGateway:
    return SqlitePersistenceGateway(db)


@pytest.fixture
def lifecycle(gateway: SqlitePersistenceGateway) -> PlayerLifecycle:
    return PlayerLifecycle(gateway)


@pytest.fixture
def resolver(gateway: SqlitePersistenceGateway, lifecycle: PlayerLifecycle, clock: FakeClock) -> OutcomeResolver:
    return OutcomeResolver(gateway, lifecycle, clock=clock)
