"""Shared fixtures. Nothing here opens a socket; paramiko is faked at the ServerInterface seam."""
import logging
import types

import pytest

from sshesame.auth import AuthDecisionEngine, ConnMeta
from sshesame.config import Policy
from sshesame.keys import KeyKind, ensure_key


class FakeKey:
    """Stands in for a paramiko public key; only the wire blob is used."""

    def __init__(self, blob):
        self.blob = blob

    def asbytes(self):
        return self.blob


class FakeTransport:
    def __init__(self, peer=('203.0.113.7', 40022), session_id=b'\x0a\x0b\x0c', remote_version='SSH-2.0-OpenSSH_9.6'):
        self.peer = peer
        self.session_id = session_id
        self.remote_version = remote_version
        self.closed = False
        self.authenticated = False
        self.local_version = None
        self.security_options = types.SimpleNamespace(kex=None, ciphers=None, digests=None)
        self.packetizer = types.SimpleNamespace(REKEY_BYTES=2 ** 29)
        self.server_keys = []

    def getpeername(self):
        return self.peer

    def close(self):
        self.closed = True

    def is_authenticated(self):
        return self.authenticated

    def get_security_options(self):
        return self.security_options

    def add_server_key(self, key):
        self.server_keys.append(key)


@pytest.fixture
def conn():
    return ConnMeta(user='root', remote_address='198.51.100.4:51515', session_id='abcd', client_version='SSH-2.0-Go')


@pytest.fixture
def policy():
    return Policy()


@pytest.fixture
def engine(policy):
    return AuthDecisionEngine(policy)


@pytest.fixture
def audit(caplog):
    """Return a callable listing the AuthAttemptRecords logged so far."""
    caplog.set_level(logging.DEBUG, logger='sshesame')

    def records():
        return [record.auth_attempt for record in caplog.records if hasattr(record, 'auth_attempt')]
    return records


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def host_key_path(tmp_path):
    path = tmp_path / 'keys' / 'host_ed25519_key'
    ensure_key(path, KeyKind.ED25519)
    return str(path)


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Point the XDG directories at empty temporary locations."""
    config_home = tmp_path / 'config'
    data_home = tmp_path / 'data'
    config_home.mkdir()
    monkeypatch.setenv('XDG_CONFIG_HOME', str(config_home))
    monkeypatch.setenv('XDG_DATA_HOME', str(data_home))
    return types.SimpleNamespace(config_home=config_home, data_home=data_home)
