import pytest

from linksharing.access import Access


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def access() -> Access:
    return Access(access_key_id="AKIAEXAMPLE", secret_access_key="wJalrXUtnFEMI/K7MDENG", region="eu-west-1")


@pytest.fixture
def serialized_access(access: Access) -> str:
    return access.serialize()
