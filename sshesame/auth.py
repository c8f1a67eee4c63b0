"""Authentication decisions for the honeypot.

Every attempt is logged with the credential exactly as the client sent it.
Whether the attempt succeeds depends only on the policy of its method, never
on the credential itself.
"""
import base64
import enum
import hashlib
import logging
from dataclasses import dataclass

from .errors import ChallengeTransportError
from .logger import get_log_entry

logger = logging.getLogger('sshesame.auth')


class Outcome(enum.Enum):
    ACCEPT = 'accept'
    REJECT = 'reject'

    def __bool__(self):
        return self is Outcome.ACCEPT


@dataclass(frozen=True)
class ConnMeta:
    user: str
    remote_address: str
    session_id: str = ''
    client_version: str = ''

    def log_fields(self):
        return {
            'user': self.user,
            'remote_address': self.remote_address,
            'session_id': self.session_id,
            'client_version': self.client_version,
        }


@dataclass(frozen=True)
class AuthAttemptRecord:
    conn: ConnMeta
    method: str
    credential_field: str
    credential: str
    success: bool

    def fields(self):
        return {
            'method': self.method,
            self.credential_field: self.credential,
            'success': self.success,
        }


METHOD_MESSAGES = {
    'password': 'Password authentication attempted',
    'publickey': 'Public key authentication attempted',
    'keyboard-interactive': 'Keyboard interactive authentication attempted',
}


def fingerprint_sha256(key):
    """OpenSSH style SHA256 fingerprint of a public key (a paramiko key or its wire blob)."""
    blob = key if isinstance(key, (bytes, bytearray)) else key.asbytes()
    digest = hashlib.sha256(blob).digest()
    return 'SHA256:' + base64.b64encode(digest).decode('ascii').rstrip('=')


class AuthDecisionEngine:
    def __init__(self, policy, audit_logger=None):
        self.policy = policy
        self.audit_logger = audit_logger or logger

    def _verdict(self, method_policy):
        return Outcome.ACCEPT if method_policy.accepted else Outcome.REJECT

    def _emit(self, record):
        get_log_entry(record.conn, self.audit_logger).info(
            METHOD_MESSAGES[record.method],
            extra={'fields': record.fields(), 'auth_attempt': record},
        )

    def decide_password(self, conn, password):
        if isinstance(password, (bytes, bytearray)):
            password = bytes(password).decode('utf-8', 'replace')
        outcome = self._verdict(self.policy.password_auth)
        self._emit(AuthAttemptRecord(conn, 'password', 'password', password, bool(outcome)))
        return outcome

    def decide_public_key(self, conn, key):
        outcome = self._verdict(self.policy.public_key_auth)
        self._emit(AuthAttemptRecord(
            conn, 'publickey', 'public_key_fingerprint', fingerprint_sha256(key), bool(outcome),
        ))
        return outcome

    def keyboard_interactive_prompts(self):
        return [(question.text, question.echo) for question in self.policy.keyboard_interactive_auth.questions]

    def decide_keyboard_interactive(self, conn, challenge):
        """Ask the configured questions through ``challenge`` and decide.

        ``challenge(user, instruction, questions, echos)`` returns the answers.
        If it raises ChallengeTransportError the attempt is rejected without
        an attempt record.
        """
        ki_policy = self.policy.keyboard_interactive_auth
        prompts = self.keyboard_interactive_prompts()
        questions = [text for text, _ in prompts]
        echos = [echo for _, echo in prompts]
        try:
            answers = challenge(conn.user, ki_policy.instruction, questions, echos)
        except ChallengeTransportError as e:
            logger.error(f"Failed to process keyboard interactive authentication: {e}")
            return Outcome.REJECT

        outcome = self._verdict(ki_policy)
        self._emit(AuthAttemptRecord(
            conn, 'keyboard-interactive', 'answers', ', '.join(answers), bool(outcome),
        ))
        return outcome

    def log_authentication(self, conn, method, success):
        get_log_entry(conn, self.audit_logger).info(
            'Client attempted to authenticate',
            extra={'fields': {'method': method, 'success': bool(success)}},
        )
