class SSHesameError(Exception):
    """Base class for errors that stop the honeypot from starting."""


class ConfigError(SSHesameError):
    pass


class ConfigUnreadableError(ConfigError):
    def __init__(self, path, reason):
        super().__init__(f"Failed to read config file {path}: {reason}")
        self.path = path


class ConfigUnknownFieldError(ConfigError):
    def __init__(self, field):
        super().__init__(f"Unknown config field {field!r}")
        self.field = field


class ConfigMalformedError(ConfigError):
    pass


class KeyIoError(SSHesameError):
    def __init__(self, path, reason):
        super().__init__(f"Host key {path}: {reason}")
        self.path = path


class ChallengeTransportError(Exception):
    """The keyboard-interactive challenge could not be completed with the client."""
