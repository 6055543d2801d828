import pytest

from featurebook import clear_cache


class MockHttpResp:
    def __init__(self, status: int, data: str, headers: dict = None) -> None:
        self.status = status
        self.data = data.encode("utf-8")
        self.headers = headers or {}


@pytest.fixture(autouse=True)
def reset_repositories():
    """Drop the process-wide repositories between tests"""
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def mock_http_resp():
    return MockHttpResp
