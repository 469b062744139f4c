import pytest

from tests.helpers.harness import RelayHarness


@pytest.fixture(scope="function")
def relay(tmp_path):
    """Relay app wired to fake processor and consumer, isolated storage per test."""
    harness = RelayHarness(tmp_path)
    yield harness
    harness.close()


@pytest.fixture(scope="function")
def client(relay):
    """HTTP test client with the default configuration (verify + queue)."""
    return relay.client


@pytest.fixture(scope="function")
def context():
    return {}
