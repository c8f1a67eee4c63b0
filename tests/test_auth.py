import base64
import hashlib
import logging

import pytest

from conftest import FakeKey
from sshesame.auth import AuthDecisionEngine, Outcome, fingerprint_sha256
from sshesame.config import KeyboardInteractivePolicy, MethodPolicy, Policy, Question
from sshesame.errors import ChallengeTransportError
from sshesame.keys import KeyKind, ensure_key, load_host_key


def engine_for(**changes):
    return AuthDecisionEngine(Policy(**changes))


@pytest.mark.parametrize('password', ['wrong', 'correct', ''])
def test_password_accepted_regardless_of_content(conn, audit, password):
    engine = engine_for(password_auth=MethodPolicy(enabled=True, accepted=True))
    assert engine.decide_password(conn, password) is Outcome.ACCEPT
    [record] = audit()
    assert record.method == 'password'
    assert record.credential == password
    assert record.success


def test_password_rejected(conn, audit):
    engine = engine_for(password_auth=MethodPolicy(enabled=True, accepted=False))
    assert engine.decide_password(conn, b'hunter2') is Outcome.REJECT
    [record] = audit()
    assert record.fields() == {'method': 'password', 'password': 'hunter2', 'success': False}
    assert record.conn == conn


def test_password_bytes_are_decoded_leniently(engine, conn, audit):
    engine.decide_password(conn, b'caf\xc3\xa9\xff')
    assert audit()[0].credential == 'café�'


def test_outcome_truthiness():
    assert Outcome.ACCEPT
    assert not Outcome.REJECT


def test_fingerprint_matches_openssh_format():
    blob = b'\x00\x00\x00\x0bssh-ed25519' + b'\x00' * 36
    expected = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip('=')
    assert fingerprint_sha256(blob) == 'SHA256:' + expected
    assert fingerprint_sha256(FakeKey(blob)) == 'SHA256:' + expected


def test_public_key_logs_fingerprint_not_key(engine, conn, audit, tmp_path):
    ensure_key(tmp_path / 'client', KeyKind.ED25519)
    key = load_host_key(str(tmp_path / 'client'))

    assert engine.decide_public_key(conn, key) is Outcome.REJECT
    [record] = audit()
    assert record.fields() == {
        'method': 'publickey',
        'public_key_fingerprint': fingerprint_sha256(key),
        'success': False,
    }
    assert record.credential.startswith('SHA256:')


def test_public_key_accepted(conn, audit):
    engine = engine_for(public_key_auth=MethodPolicy(enabled=True, accepted=True))
    assert engine.decide_public_key(conn, FakeKey(b'blob')) is Outcome.ACCEPT
    assert audit()[0].success


def keyboard_interactive_engine(accepted):
    return engine_for(keyboard_interactive_auth=KeyboardInteractivePolicy(
        enabled=True,
        accepted=accepted,
        instruction='Verify yourself',
        questions=(Question('User: ', True), Question('Password: ', False)),
    ))


def test_keyboard_interactive(conn, audit):
    engine = keyboard_interactive_engine(accepted=True)
    calls = []

    def challenge(user, instruction, questions, echos):
        calls.append((user, instruction, questions, echos))
        return ['admin', 's3cret']

    assert engine.decide_keyboard_interactive(conn, challenge) is Outcome.ACCEPT
    assert calls == [('root', 'Verify yourself', ['User: ', 'Password: '], [True, False])]
    [record] = audit()
    assert record.fields() == {'method': 'keyboard-interactive', 'answers': 'admin, s3cret', 'success': True}


def test_keyboard_interactive_rejected(conn, audit):
    engine = keyboard_interactive_engine(accepted=False)
    assert engine.decide_keyboard_interactive(conn, lambda *args: ['x', 'y']) is Outcome.REJECT
    assert not audit()[0].success


def test_keyboard_interactive_transport_failure(conn, audit, caplog):
    engine = keyboard_interactive_engine(accepted=True)

    def challenge(user, instruction, questions, echos):
        raise ChallengeTransportError('connection reset')

    assert engine.decide_keyboard_interactive(conn, challenge) is Outcome.REJECT
    assert audit() == []
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert 'connection reset' in errors[0].getMessage()


def test_records_carry_connection_fields(engine, conn, caplog, audit):
    engine.decide_password(conn, 'toor')
    [log_record] = [r for r in caplog.records if hasattr(r, 'auth_attempt')]
    assert log_record.getMessage() == 'Password authentication attempted'
    assert log_record.fields == {
        'user': 'root',
        'remote_address': '198.51.100.4:51515',
        'session_id': 'abcd',
        'client_version': 'SSH-2.0-Go',
        'method': 'password',
        'password': 'toor',
        'success': True,
    }


def test_log_authentication_is_not_an_attempt_record(engine, conn, caplog, audit):
    engine.log_authentication(conn, 'none', False)
    assert audit() == []
    [log_record] = caplog.records
    assert log_record.getMessage() == 'Client attempted to authenticate'
    assert log_record.fields['method'] == 'none'
    assert log_record.fields['success'] is False


def test_custom_audit_logger(conn, caplog):
    caplog.set_level(logging.INFO, logger='honeypot.audit')
    engine = AuthDecisionEngine(Policy(), audit_logger=logging.getLogger('honeypot.audit'))
    engine.decide_password(conn, 'x')
    assert [r.name for r in caplog.records] == ['honeypot.audit']
