import concurrent.futures
import logging
import re
import socket
import threading
from dataclasses import dataclass, field

import paramiko

from .auth import ConnMeta, Outcome, fingerprint_sha256
from .config import parse_listen_address
from .errors import ChallengeTransportError, ConfigMalformedError
from .keys import load_host_key

logger = logging.getLogger('sshesame.ssh_server')

DEFAULT_MAX_AUTH_TRIES = 6
MIN_REKEY_THRESHOLD = 256


def normalize_banner(banner):
    return re.sub(r'\r\n|\r|\n', '\r\n', banner)


def _supported(name, requested, available):
    supported = tuple(algorithm for algorithm in requested if algorithm in available)
    for algorithm in requested:
        if algorithm not in available:
            logger.warning(f"Ignoring unsupported {name} algorithm {algorithm!r}")
    if requested and not supported:
        raise ConfigMalformedError(f"None of the configured {name} algorithms are supported: {', '.join(requested)}")
    return supported


@dataclass(frozen=True)
class HandshakeConfig:
    server_version: str
    banner: str
    host_keys: tuple
    key_exchanges: tuple = ()
    ciphers: tuple = ()
    macs: tuple = ()
    rekey_threshold: int = 0
    no_client_auth: bool = False
    max_auth_tries: int = DEFAULT_MAX_AUTH_TRIES
    password_callback: object = None
    public_key_callback: object = None
    keyboard_interactive_callback: object = None
    keyboard_interactive_prompts: tuple = ()
    keyboard_interactive_instruction: str = ''
    auth_log_callback: object = field(default=None, compare=False)

    @property
    def allowed_auths(self):
        methods = []
        if self.password_callback:
            methods.append('password')
        if self.public_key_callback:
            methods.append('publickey')
        if self.keyboard_interactive_callback:
            methods.append('keyboard-interactive')
        return methods

    def apply(self, transport):
        """Configure a server-side paramiko transport before start_server()."""
        transport.local_version = self.server_version
        options = transport.get_security_options()
        if self.key_exchanges:
            options.kex = self.key_exchanges
        if self.ciphers:
            options.ciphers = self.ciphers
        if self.macs:
            options.digests = self.macs
        if self.rekey_threshold:
            transport.packetizer.REKEY_BYTES = self.rekey_threshold
        for host_key in self.host_keys:
            transport.add_server_key(host_key)


def build_handshake_config(policy, engine):
    rekey_threshold = policy.rekey_threshold
    if rekey_threshold:
        rekey_threshold = max(rekey_threshold, MIN_REKEY_THRESHOLD)

    max_auth_tries = policy.max_auth_tries or DEFAULT_MAX_AUTH_TRIES

    ki_policy = policy.keyboard_interactive_auth
    return HandshakeConfig(
        server_version=policy.server_version,
        banner=normalize_banner(policy.banner),
        host_keys=tuple(load_host_key(path) for path in policy.host_keys),
        key_exchanges=_supported('key exchange', policy.key_exchanges, paramiko.Transport._kex_info),
        ciphers=_supported('cipher', policy.ciphers, paramiko.Transport._cipher_info),
        macs=_supported('MAC', policy.macs, paramiko.Transport._mac_info),
        rekey_threshold=rekey_threshold,
        no_client_auth=policy.no_client_auth,
        max_auth_tries=max_auth_tries,
        password_callback=engine.decide_password if policy.password_auth.enabled else None,
        public_key_callback=engine.decide_public_key if policy.public_key_auth.enabled else None,
        keyboard_interactive_callback=engine.decide_keyboard_interactive if ki_policy.enabled else None,
        keyboard_interactive_prompts=tuple(engine.keyboard_interactive_prompts()),
        keyboard_interactive_instruction=ki_policy.instruction,
        auth_log_callback=engine.log_authentication,
    )


def _result(outcome):
    return paramiko.AUTH_SUCCESSFUL if outcome is Outcome.ACCEPT else paramiko.AUTH_FAILED


class HoneypotServerInterface(paramiko.ServerInterface):
    """Routes paramiko's authentication hooks to the configured callbacks."""

    def __init__(self, handshake, transport):
        self.handshake = handshake
        self.transport = transport
        self.auth_failures = 0
        self.public_key_verdicts = {}
        self.interactive_user = ''
        self.pending_public_key = None
        self.settle_lock = threading.Lock()

    def conn_meta(self, username):
        peer = self.transport.getpeername()
        session_id = self.transport.session_id
        return ConnMeta(
            user=username,
            remote_address=f"{peer[0]}:{peer[1]}",
            session_id=session_id.hex() if session_id else '',
            client_version=self.transport.remote_version or '',
        )

    def _finish(self, conn, method, result):
        if self.handshake.auth_log_callback:
            self.handshake.auth_log_callback(conn, method, result == paramiko.AUTH_SUCCESSFUL)
        if result != paramiko.AUTH_SUCCESSFUL and method != 'none':
            self.auth_failures += 1
            if 0 < self.handshake.max_auth_tries <= self.auth_failures:
                logger.info(f"Too many authentication failures from {conn.remote_address}, disconnecting")
                self.transport.close()
        return result

    def get_allowed_auths(self, username):
        return ','.join(self.handshake.allowed_auths)

    def get_banner(self):
        if not self.handshake.banner:
            return (None, None)
        return (self.handshake.banner, 'en-US')

    def settle_public_key(self):
        """Finish an accepted public key attempt once its signature has been checked.

        paramiko calls check_auth_publickey before verifying the signature and
        never reports a bad one, so the result is read from the transport when
        the next request arrives or the connection ends.
        """
        with self.settle_lock:
            pending, self.pending_public_key = self.pending_public_key, None
        if pending is None:
            return
        conn, _ = pending
        result = paramiko.AUTH_SUCCESSFUL if self.transport.is_authenticated() else paramiko.AUTH_FAILED
        self._finish(conn, 'publickey', result)

    def check_auth_none(self, username):
        self.settle_public_key()
        result = paramiko.AUTH_SUCCESSFUL if self.handshake.no_client_auth else paramiko.AUTH_FAILED
        return self._finish(self.conn_meta(username), 'none', result)

    def check_auth_password(self, username, password):
        self.settle_public_key()
        conn = self.conn_meta(username)
        if not self.handshake.password_callback:
            return self._finish(conn, 'password', paramiko.AUTH_FAILED)
        return self._finish(conn, 'password', _result(self.handshake.password_callback(conn, password)))

    def check_auth_publickey(self, username, key):
        conn = self.conn_meta(username)
        if not self.handshake.public_key_callback:
            self.settle_public_key()
            return self._finish(conn, 'publickey', paramiko.AUTH_FAILED)
        # A key may be offered twice (query, then signed request); decide only once per key.
        cache_key = (username, fingerprint_sha256(key))
        if self.pending_public_key is not None and self.pending_public_key[1] != cache_key:
            self.settle_public_key()
        result = self.public_key_verdicts.get(cache_key)
        if result is None:
            result = _result(self.handshake.public_key_callback(conn, key))
            self.public_key_verdicts[cache_key] = result
        if result == paramiko.AUTH_SUCCESSFUL:
            self.pending_public_key = (conn, cache_key)
            return result
        return self._finish(conn, 'publickey', result)

    def check_auth_interactive(self, username, submethods):
        self.settle_public_key()
        if not self.handshake.keyboard_interactive_callback:
            return self._finish(self.conn_meta(username), 'keyboard-interactive', paramiko.AUTH_FAILED)
        self.interactive_user = username
        return paramiko.InteractiveQuery('', self.handshake.keyboard_interactive_instruction,
                                         *self.handshake.keyboard_interactive_prompts)

    def check_auth_interactive_response(self, responses):
        conn = self.conn_meta(self.interactive_user)
        expected = len(self.handshake.keyboard_interactive_prompts)

        def challenge(user, instruction, questions, echos):
            if len(responses) != expected:
                raise ChallengeTransportError(f"expected {expected} answers, got {len(responses)}")
            return list(responses)

        outcome = self.handshake.keyboard_interactive_callback(conn, challenge)
        return self._finish(conn, 'keyboard-interactive', _result(outcome))

    def check_channel_request(self, kind, chanid):
        self.settle_public_key()
        logger.info(f"Refusing {kind} channel request from {self.transport.getpeername()[0]}")
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED


class SSHHoneypot:
    def __init__(self, handshake, listen_address='127.0.0.1:2022', max_workers=50):
        self.handshake = handshake
        self.host, self.port = parse_listen_address(listen_address)
        self.max_workers = max_workers
        self.server_socket = None
        self.is_running = False
        self.executor = None

    def start(self):
        family = socket.AF_INET6 if ':' in self.host else socket.AF_INET
        self.server_socket = socket.socket(family, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers)

        try:
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(5)
            self.is_running = True
            logger.info(f"Listening on {self.host}:{self.port}")

            while self.is_running:
                try:
                    client_socket, addr = self.server_socket.accept()
                    self.executor.submit(self.handle_client, client_socket, addr)
                except OSError:
                    break
        except OSError as e:
            logger.error(f"Failed to listen on {self.host}:{self.port}: {e}")
            raise

    def handle_client(self, client_socket, addr):
        logger.info(f"Connection accepted from {addr[0]}:{addr[1]}")
        transport = None
        server = None
        try:
            transport = paramiko.Transport(client_socket)
            self.handshake.apply(transport)
            server = HoneypotServerInterface(self.handshake, transport)
            transport.start_server(server=server)
            while transport.is_active():
                chan = transport.accept(1)
                if chan is not None:
                    chan.close()
                if transport.is_authenticated():
                    server.settle_public_key()
        except Exception as e:
            logger.warning(f"Error handling SSH client {addr[0]}:{addr[1]}: {e}")
        finally:
            if server is not None:
                server.settle_public_key()
            if transport is not None:
                transport.close()
            else:
                client_socket.close()
            logger.info(f"Connection from {addr[0]}:{addr[1]} closed")

    def stop(self):
        self.is_running = False
        if self.server_socket:
            self.server_socket.close()
        if self.executor:
            self.executor.shutdown(wait=False)
