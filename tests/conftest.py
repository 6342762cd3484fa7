import pytest

from fakes import Harness


@pytest.fixture
async def harness():
    h = Harness()
    yield h
    await h.controller.stop()
