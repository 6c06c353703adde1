"""
Shared fixtures
"""
import pytest

from binance_connect.credentials import Credential
from helpers import FakeClock, FakeHttpTransport, FakeWebSocketTransport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http():
    return FakeHttpTransport()


@pytest.fixture
def ws_transport():
    return FakeWebSocketTransport()


@pytest.fixture
def credential():
    return Credential(
        "vmPUZE6mv9SD5VNHk4HlWFsOr6aKE2zvsw0MuIgwCIPy6utIco14y7Ju91duEh8A",
        "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j",
    )
