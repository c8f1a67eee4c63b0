import logging
import os
from dataclasses import dataclass, field, replace

import yaml

from .errors import ConfigMalformedError, ConfigUnknownFieldError, ConfigUnreadableError
from .keys import ensure_default_keys

logger = logging.getLogger('sshesame.config')

CONFIG_FILE_NAME = 'sshesame.yaml'
DEFAULT_BANNER = 'This is an SSH honeypot. Everything is logged and monitored.'


@dataclass(frozen=True)
class MethodPolicy:
    enabled: bool = False
    accepted: bool = False


@dataclass(frozen=True)
class Question:
    text: str = ''
    echo: bool = False


@dataclass(frozen=True)
class KeyboardInteractivePolicy(MethodPolicy):
    instruction: str = ''
    questions: tuple = ()


@dataclass(frozen=True)
class Policy:
    listen_address: str = '127.0.0.1:2022'
    rekey_threshold: int = 0
    key_exchanges: tuple = ()
    ciphers: tuple = ()
    macs: tuple = ()
    host_keys: tuple = ()
    no_client_auth: bool = False
    max_auth_tries: int = 0
    password_auth: MethodPolicy = MethodPolicy(enabled=True, accepted=True)
    public_key_auth: MethodPolicy = MethodPolicy(enabled=True, accepted=False)
    keyboard_interactive_auth: KeyboardInteractivePolicy = field(default_factory=KeyboardInteractivePolicy)
    server_version: str = 'SSH-2.0-sshesame'
    banner: str = DEFAULT_BANNER


def xdg_config_home():
    return os.environ.get('XDG_CONFIG_HOME') or os.path.join(os.path.expanduser('~'), '.config')


def xdg_data_home():
    return os.environ.get('XDG_DATA_HOME') or os.path.join(os.path.expanduser('~'), '.local', 'share')


# Value checkers. Each takes the dotted field name (for error messages) and the raw YAML value.

def _string(name, value):
    if not isinstance(value, str):
        raise ConfigMalformedError(f"{name}: expected a string, got {value!r}")
    return value


def _bool(name, value):
    if not isinstance(value, bool):
        raise ConfigMalformedError(f"{name}: expected a boolean, got {value!r}")
    return value


def _int(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigMalformedError(f"{name}: expected an integer, got {value!r}")
    return value


def parse_listen_address(address):
    """Split a host:port listen address. An empty host means all interfaces."""
    host, sep, port = address.rpartition(':')
    if not sep or not port.isdigit():
        raise ConfigMalformedError(f"ListenAddress: expected host:port, got {address!r}")
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    return host or '0.0.0.0', int(port)


def _listen_address(name, value):
    parse_listen_address(_string(name, value))
    return value


def _uint(name, value):
    value = _int(name, value)
    if value < 0:
        raise ConfigMalformedError(f"{name}: must not be negative, got {value!r}")
    return value


def _strings(name, value):
    if not isinstance(value, list):
        raise ConfigMalformedError(f"{name}: expected a list of strings, got {value!r}")
    return tuple(_string(f"{name}[{i}]", item) for i, item in enumerate(value))


def _questions(name, value):
    if not isinstance(value, list):
        raise ConfigMalformedError(f"{name}: expected a list of questions, got {value!r}")
    return tuple(_merge(f"{name}[{i}]", Question(), item, QUESTION_FIELDS) for i, item in enumerate(value))


def _section(default_factory, fields):
    def parse(name, value, current=None):
        return _merge(name, current if current is not None else default_factory(), value, fields)
    parse.nested = True
    return parse


QUESTION_FIELDS = {
    'Text': ('text', _string),
    'Echo': ('echo', _bool),
}

METHOD_FIELDS = {
    'Enabled': ('enabled', _bool),
    'Accepted': ('accepted', _bool),
}

KEYBOARD_INTERACTIVE_FIELDS = dict(METHOD_FIELDS, **{
    'Instruction': ('instruction', _string),
    'Questions': ('questions', _questions),
})

POLICY_FIELDS = {
    'ListenAddress': ('listen_address', _listen_address),
    'RekeyThreshold': ('rekey_threshold', _uint),
    'KeyExchanges': ('key_exchanges', _strings),
    'Ciphers': ('ciphers', _strings),
    'MACs': ('macs', _strings),
    'HostKeys': ('host_keys', _strings),
    'NoClientAuth': ('no_client_auth', _bool),
    'MaxAuthTries': ('max_auth_tries', _int),
    'PasswordAuth': ('password_auth', _section(MethodPolicy, METHOD_FIELDS)),
    'PublicKeyAuth': ('public_key_auth', _section(MethodPolicy, METHOD_FIELDS)),
    'KeyboardInteractiveAuth': ('keyboard_interactive_auth', _section(KeyboardInteractivePolicy, KEYBOARD_INTERACTIVE_FIELDS)),
    'ServerVersion': ('server_version', _string),
    'Banner': ('banner', _string),
}


def _merge(prefix, base, document, fields):
    """Return a copy of the frozen dataclass ``base`` with ``document`` applied field by field.

    Field names are matched case-insensitively. Unknown names are rejected.
    """
    if document is None:
        return base
    if not isinstance(document, dict):
        raise ConfigMalformedError(f"{prefix or 'config'}: expected a mapping, got {document!r}")

    lookup = {key.lower(): (key, spec) for key, spec in fields.items()}
    changes = {}
    seen = set()
    for raw_key, value in document.items():
        name = f"{prefix}.{raw_key}" if prefix else str(raw_key)
        if not isinstance(raw_key, str) or raw_key.lower() not in lookup:
            raise ConfigUnknownFieldError(name)
        key, (attr, parse) = lookup[raw_key.lower()]
        if attr in seen:
            raise ConfigMalformedError(f"{name}: field given more than once")
        seen.add(attr)
        if value is None:
            continue
        if getattr(parse, 'nested', False):
            changes[attr] = parse(name, value, getattr(base, attr))
        else:
            changes[attr] = parse(name, value)
    return replace(base, **changes)


def read_config_file(path=None, config_home=None):
    """Return the raw bytes of the config document, or None when there is none.

    An explicit ``path`` must be readable. Without one, a missing file at the
    conventional location is not an error.
    """
    if path:
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise ConfigUnreadableError(path, e) from e

    default_path = os.path.join(config_home or xdg_config_home(), CONFIG_FILE_NAME)
    try:
        with open(default_path, 'rb') as f:
            return f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ConfigUnreadableError(default_path, e) from e


def parse_config(config_bytes, base=None):
    if base is None:
        base = Policy()
    if config_bytes is None:
        return base
    try:
        document = yaml.safe_load(config_bytes)
    except yaml.YAMLError as e:
        raise ConfigMalformedError(f"Failed to parse config: {e}") from e
    return _merge('', base, document, POLICY_FIELDS)


def resolve(path=None, config_home=None, data_home=None):
    """Build the policy from the built-in defaults and the optional config file.

    When the document names no host keys, the default keys are generated
    under the data directory.
    """
    policy = parse_config(read_config_file(path, config_home))

    if not policy.host_keys:
        data_dir = os.path.join(data_home or xdg_data_home(), 'sshesame')
        logger.info(f"No host keys configured, using keys at {data_dir}")
        policy = replace(policy, host_keys=tuple(ensure_default_keys(data_dir)))

    return policy
