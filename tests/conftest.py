"""
Shared fixtures: an in-memory SQLite database per test, the service graph
wired against it, and a mocked MQTT transport.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlalchemy import func
from sqlmodel import Session, create_engine, select

from piston_server.database.db import init_db
from piston_server.database.models import DeviceCreate
from piston_server.services.cron import QuartzCronEvaluator
from piston_server.services.dispatcher import CommandDispatcher
from piston_server.services.ownership import DeviceRegistry
from piston_server.services.schedules import ScheduleRepository
from piston_server.services.telemetry import TelemetryRecorder

OWNER = "user-owner"
STRANGER = "user-stranger"
FIXED_NOW = datetime(2030, 1, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine, expire_on_commit=False)


@pytest.fixture
def registry(session_factory):
    return DeviceRegistry(session_factory)


@pytest.fixture
def telemetry(session_factory):
    return TelemetryRecorder(session_factory)


@pytest.fixture
def transport():
    return MagicMock()


@pytest.fixture
def dispatcher(transport, registry, telemetry, session_factory):
    return CommandDispatcher(
        transport,
        registry,
        session_factory=session_factory,
        piston_store=registry.pistons,
        telemetry=telemetry,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def cron():
    return QuartzCronEvaluator("UTC")


@pytest.fixture
def repository(cron, registry, session_factory):
    return ScheduleRepository(cron, registry, session_factory=session_factory)


@pytest.fixture
def device(registry):
    return registry.create_device(OWNER, DeviceCreate(name="Garden valves", mqtt_client_id="esp32-garden")).value


def count_rows(session_factory, model) -> int:
    with session_factory() as session:
        return session.exec(select(func.count()).select_from(model)).one()
