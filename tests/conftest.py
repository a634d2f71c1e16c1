import pytest

from stepcache.store import Store
from stepcache.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def _quiet_console():
    # Keep per-step lines out of test output; failures still print
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture()
def store(tmp_path):
    return Store(tmp_path / "store")
