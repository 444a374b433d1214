"""
Pytest configuration and fixtures for the SheSurvived tests
"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from shesurvived.accounts import AccountService
from shesurvived.database import MemoryBackend, RecordStore
from shesurvived.lifecycle import AlertController
from shesurvived.main import create_app
from shesurvived.models import UserCreate
from shesurvived.notifier import ChangeBus
from shesurvived.repository import Repository
from shesurvived.services import Services
from shesurvived.sources import SimulatedAudioSource, SimulatedLocationSource
from shesurvived.timers import build_scheduler
from shesurvived.tone import LoggingToneSink

# Long enough that no timer fires during a test unless the test asks for it
IDLE_INTERVAL = 3600


async def settle(bus):
    """Let every change event and the tasks it wakes run to completion"""
    await bus.flush()
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
async def store():
    """Fresh in-memory record store with its own change bus"""
    store = RecordStore(MemoryBackend(), ChangeBus())
    yield store
    store.bus.close()


@pytest.fixture
def repo_a(store):
    return Repository(store, "context-a")


@pytest.fixture
def repo_b(store):
    return Repository(store, "context-b")


@pytest.fixture
def accounts(repo_a):
    return AccountService(repo_a)


@pytest.fixture
async def scheduler():
    """Scheduler running on the test's event loop"""
    scheduler = build_scheduler()
    scheduler.start()
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
async def controller(repo_a, scheduler):
    controller = AlertController(repo_a, scheduler, SimulatedAudioSource(), audio_interval=IDLE_INTERVAL)
    yield controller
    await controller.close()


@pytest.fixture
async def other_controller(repo_b, scheduler):
    controller = AlertController(repo_b, scheduler, SimulatedAudioSource(), audio_interval=IDLE_INTERVAL)
    yield controller
    await controller.close()


async def register(accounts, name, email, password="secret123"):
    return await accounts.register(UserCreate(
        full_name=name,
        email=email,
        phone_number="+212600000000",
        city="Agadir",
        password=password,
        confirm_password=password,
    ))


@pytest.fixture
async def asha(accounts):
    """Registered user with a paired and verified bracelet"""
    user = await register(accounts, "Asha", "asha@example.com")
    user = await accounts.select_bracelet(user, True)
    return await accounts.verify_bracelet(user, "AB12CD34")


@pytest.fixture
async def mina(accounts, asha):
    """Second registered user, already trusted by Asha"""
    user = await register(accounts, "Mina", "mina@example.com")
    await accounts.add_trusted_contact(asha, user.id)
    return await accounts.require(user.id)


@pytest.fixture
def services():
    return Services(
        store=RecordStore(MemoryBackend(), ChangeBus()),
        audio_source=SimulatedAudioSource(),
        location_source=SimulatedLocationSource(),
        tone_sink_factory=LoggingToneSink,
        audio_interval=IDLE_INTERVAL,
        location_interval=IDLE_INTERVAL,
        scan_interval=IDLE_INTERVAL,
    )


@pytest.fixture
def client(services):
    """Test client for the API; entering it runs the app lifespan"""
    app = create_app(services)
    with TestClient(app) as client:
        yield client


def api_register(client, name, email, password="secret123"):
    response = client.post("/api/register", json={
        "full_name": name,
        "email": email,
        "phone_number": "+212600000000",
        "city": "Agadir",
        "password": password,
        "confirm_password": password,
    })
    assert response.status_code == 200, response.text
    body = response.json()
    return body["user_id"], {"Authorization": f"Bearer {body['access_token']}"}
