import pytest

from pnm.ratelimit import reset_shared_limiters


@pytest.fixture(autouse=True)
def _fresh_shared_limiters():
    reset_shared_limiters()
    yield
    reset_shared_limiters()
