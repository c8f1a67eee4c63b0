import enum
import logging
import os
from dataclasses import dataclass

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from .errors import KeyIoError

logger = logging.getLogger('sshesame.keys')

RSA_KEY_SIZE = 3072


class KeyKind(enum.Enum):
    RSA = 'rsa'
    ECDSA = 'ecdsa'
    ED25519 = 'ed25519'


@dataclass(frozen=True)
class HostKeyDescriptor:
    kind: KeyKind
    path: str


DEFAULT_HOST_KEYS = (
    (KeyKind.RSA, 'host_rsa_key'),
    (KeyKind.ECDSA, 'host_ecdsa_key'),
    (KeyKind.ED25519, 'host_ed25519_key'),
)


def generate_private_key(kind):
    if kind is KeyKind.RSA:
        return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    if kind is KeyKind.ECDSA:
        return ec.generate_private_key(ec.SECP256R1())
    if kind is KeyKind.ED25519:
        return ed25519.Ed25519PrivateKey.generate()
    raise ValueError(f"unsupported key type {kind!r}")


def ensure_key(path, kind):
    """Make sure a host key exists at ``path``, generating one of ``kind`` if it does not.

    An existing file is left untouched and its contents are not checked.
    Returns True when a new key was written.
    """
    path = os.fspath(path)
    try:
        os.stat(path)
        return False
    except FileNotFoundError:
        pass
    except OSError as e:
        raise KeyIoError(path, e) from e

    logger.info(f"Host key {path} not found, generating it")
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, mode=0o700, exist_ok=True)
        key = generate_private_key(kind)
        key_bytes = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key_bytes)
    except (OSError, ValueError) as e:
        raise KeyIoError(path, e) from e
    return True


def ensure_default_keys(data_dir):
    """Generate the default RSA, ECDSA and Ed25519 host keys under ``data_dir``.

    Each iteration replaces the host key list, so only the last key
    (Ed25519) ends up in the returned list even though all three files exist.
    """
    host_keys = []
    for kind, filename in DEFAULT_HOST_KEYS:
        descriptor = HostKeyDescriptor(kind, os.path.join(data_dir, filename))
        ensure_key(descriptor.path, descriptor.kind)
        host_keys = [descriptor.path]
    return host_keys


def load_host_key(path):
    try:
        return paramiko.PKey.from_path(path)
    except Exception as e:
        raise KeyIoError(path, f"failed to load: {e}") from e
