import logging
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import rdo`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from rdo.config import ConfigManager  # noqa: E402
from rdo.registry import Registry  # noqa: E402
from rdo.rules import MessagePayload, RDOType, RuleIntent  # noqa: E402
from rdo.storage import MemoryContentStore  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless RDO_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('RDO_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set RDO_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Fresh configuration per test, with no RDO_* environment leaking in."""
    for name in list(os.environ):
        if name.startswith("RDO_") and name != "RDO_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager().reset()
    yield
    ConfigManager().reset()
    root = logging.getLogger("rdo")
    for handler in list(root.handlers):
        if getattr(handler, "_rdo_handler", False):
            root.removeHandler(handler)


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return Registry(clock=clock)


@pytest.fixture
def store():
    return MemoryContentStore()


@pytest.fixture
def message_intent():
    def make(**overrides):
        fields = dict(
            type=RDOType.MESSAGE,
            name="Quarterly numbers",
            description="Do not forward",
            payload=MessagePayload(text="revenue is up 12%"),
        )
        fields.update(overrides)
        return RuleIntent(**fields)
    return make
