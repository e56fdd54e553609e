import shutil
import tempfile
from pathlib import Path

import pytest

from offloadbench.client import WorkerEndpoint
from offloadbench.engine import CipherEngine
from offloadbench.server import HttpListener
from offloadbench.worker import WorkerListener


@pytest.fixture
def engine():
    return CipherEngine(rounds=2)


@pytest.fixture
def sock_dir():
    # unix socket paths are limited to ~100 bytes, pytest's tmp_path can be longer
    d = tempfile.mkdtemp(prefix="ob-")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def worker(engine, sock_dir):
    listener = WorkerListener(engine, WorkerEndpoint.unix(str(sock_dir / "w.sock")), observer=None)
    listener.start()
    yield listener
    listener.close()


@pytest.fixture
def http_server(engine):
    events = []
    listener = HttpListener(engine, port=0, observer=events.append)
    listener.events = events
    listener.start()
    yield listener
    listener.close()
