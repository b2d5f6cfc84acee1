"""
chrony_exporter test fixtures
"""

import shutil
import socket
import tempfile

import pytest

from fakes import Chronyd, FakeDialer, UnixChronyd, tracking_payload


@pytest.fixture
def chronyd():
    """A daemon that only answers tracking."""
    return Chronyd(tracking=tracking_payload())


@pytest.fixture
def dialer(chronyd):
    return FakeDialer(chronyd)


@pytest.fixture
def short_tmpdir():
    """A temporary directory short enough for unix socket paths."""
    path = tempfile.mkdtemp(prefix="chr", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def unix_chronyd(short_tmpdir):
    """Start a Chronyd on <short_tmpdir>/chronyd.sock."""
    if not hasattr(socket, "AF_UNIX"):
        pytest.skip("unix datagram sockets not supported")
    servers = []

    def start(daemon):
        server = UnixChronyd(f"{short_tmpdir}/chronyd.sock", daemon)
        server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()
