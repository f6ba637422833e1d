import pytest

from entu_sync.entu_client import EntuClient
from entu_sync.sync_engine import SyncEngine
from tests.fakes import FakeEntuSession, make_token


@pytest.fixture
def session():
    return FakeEntuSession()


@pytest.fixture
def client(session):
    return EntuClient(api_url="https://entu.test", account="testdb", max_retries=0, session=session)


@pytest.fixture
def engine(client):
    return SyncEngine(client)


@pytest.fixture
def token():
    return make_token()
