import os
import pathlib
import sys
import tempfile

import pytest

_scratch = pathlib.Path(tempfile.mkdtemp(prefix="chatsync-tests-"))
os.environ["LOGS_DIR"] = str(_scratch / "logs")
os.environ["DATA_DIR"] = str(_scratch / "data")
os.environ["MESSAGE_STORE"] = "memory"
os.environ["HEALTH_CHECK_ENABLED"] = "false"
os.environ["BETTERSTACK_SOURCE_TOKEN"] = ""
os.environ.pop("NETWORK_PROBE_URL", None)

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from fakes import ChannelFactory, FakeConnection, TimerFactory  # noqa: E402


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def channels():
    return ChannelFactory()


@pytest.fixture
def connection():
    return FakeConnection(connected=True)
