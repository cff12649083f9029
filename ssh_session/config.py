import codecs
import configparser
from dataclasses import dataclass, field
from pathlib import Path

from .errors import InvalidConfiguration, MissingParameter

SUPPORTED_PROTOCOL_VERSIONS = ("2.0", "1.99")
HOST_KEY_POLICIES = ("tofu", "accept", "reject")
DEFAULT_KNOWN_HOSTS = str(Path.home() / ".ssh" / "known_hosts")


@dataclass(frozen=True)
class SSHConfiguration:
    host: str
    port: int = 22
    connection_timeout: float = 30
    data_timeout: float = 60
    protocol_version: str = "2.0"
    client_identifier: str = "ssh_session_1.0"
    compression_enabled: bool = False
    keep_alive_interval: float = 0  # 0 disables keep-alive
    host_key_policy: str = "tofu"  # "tofu", "accept" or "reject"
    known_hosts_file: str = DEFAULT_KNOWN_HOSTS
    encoding: str = "utf-8"
    retry_attempts: int = 1
    retry_delay_seconds: float = 1.0

    @classmethod
    def localhost(cls) -> "SSHConfiguration":
        """Configuration for an SSH server on 127.0.0.1:22."""
        return cls(host="127.0.0.1")

    @classmethod
    def create(cls, host: str, port: int) -> "SSHConfiguration":
        return cls(host=host, port=port)

    def validate(self) -> None:
        """
        Check every constraint and fail on the first violation.

        Raises:
            InvalidConfiguration: With a human-readable reason.
        """
        if not self.host or not self.host.strip():
            raise InvalidConfiguration("host must not be empty")
        if not 1 <= self.port <= 65535:
            raise InvalidConfiguration(f"port must be in range 1-65535, got {self.port}")
        if self.connection_timeout <= 0:
            raise InvalidConfiguration("connection_timeout must be greater than 0")
        if self.data_timeout <= 0:
            raise InvalidConfiguration("data_timeout must be greater than 0")
        if self.keep_alive_interval < 0:
            raise InvalidConfiguration("keep_alive_interval must not be negative")
        if self.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise InvalidConfiguration(
                f"Unsupported protocol_version '{self.protocol_version}' - "
                f"expected one of {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}"
            )
        if not self.client_identifier or any(c.isspace() for c in self.client_identifier):
            raise InvalidConfiguration("client_identifier must be non-empty without whitespace")
        if self.host_key_policy not in HOST_KEY_POLICIES:
            raise InvalidConfiguration(
                f"Unknown host_key_policy '{self.host_key_policy}' - "
                f"expected one of {', '.join(HOST_KEY_POLICIES)}"
            )
        if self.retry_attempts < 1:
            raise InvalidConfiguration("retry_attempts must be at least 1")
        if self.retry_delay_seconds < 0:
            raise InvalidConfiguration("retry_delay_seconds must not be negative")
        try:
            codecs.lookup(self.encoding)
        except LookupError:
            raise InvalidConfiguration(f"Unknown encoding '{self.encoding}'") from None

    def __str__(self) -> str:
        keep_alive = "disabled" if self.keep_alive_interval == 0 else f"{self.keep_alive_interval}s"
        return (
            "SSH configuration:\n"
            f"- Host: {self.host}:{self.port}\n"
            f"- Connection timeout: {self.connection_timeout}s\n"
            f"- Data timeout: {self.data_timeout}s\n"
            f"- Protocol version: SSH-{self.protocol_version}\n"
            f"- Client identifier: {self.client_identifier}\n"
            f"- Compression: {'enabled' if self.compression_enabled else 'disabled'}\n"
            f"- Keep-alive: {keep_alive}"
        )


@dataclass(frozen=True)
class PasswordCredential:
    password: str = field(repr=False)


@dataclass(frozen=True)
class KeyCredential:
    key_path: str
    passphrase: str | None = field(default=None, repr=False)


Credential = PasswordCredential | KeyCredential


@dataclass
class AuthConfig:
    username: str
    password: str | None = None
    key_file: str | None = None  # Path to SSH private key
    key_passphrase: str | None = None  # Passphrase for encrypted keys

    def credential(self) -> Credential:
        """Build the credential for this config. Key file wins over password."""
        if self.key_file:
            return KeyCredential(str(Path(self.key_file).expanduser()), self.key_passphrase)
        if self.password:
            return PasswordCredential(self.password)
        raise MissingParameter("password or key_file")


@dataclass
class LogConfig:
    level: str = "INFO"
    file: str = ""
    console: bool = True


@dataclass
class AppConfig:
    ssh: SSHConfiguration
    auth: AuthConfig
    logging: LogConfig


_TRUE_VALUES = ("true", "1", "yes")


def _to_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _to_number(name: str, value, convert):
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(
            f"Invalid {name} value in config: '{value}' - must be a number"
        ) from None


_SSH_NUMERIC = {
    "port": int,
    "connection_timeout": float,
    "data_timeout": float,
    "keep_alive_interval": float,
    "retry_attempts": int,
    "retry_delay_seconds": float,
}
_SSH_TEXT = (
    "host",
    "protocol_version",
    "client_identifier",
    "host_key_policy",
    "known_hosts_file",
    "encoding",
)
_AUTH_KEYS = ("username", "password", "key_file", "key_passphrase")


def load_config(config_path: str | None = None, **overrides) -> AppConfig:
    """
    Load configuration from an INI file and/or keyword overrides.
    Keyword overrides take precedence over the config file.

    Args:
        config_path: Path to the INI configuration file.
        **overrides: Values for [ssh], [auth] and [logging] keys. None means
            "not given" and leaves the file value in place.

    Returns:
        AppConfig: The populated and validated configuration.

    Raises:
        InvalidConfiguration: If the file is missing, a value is malformed,
            or the resulting SSH configuration fails validation.
        MissingParameter: If host or username is missing.
    """
    ssh_values: dict = {}
    auth_values: dict = {"username": None, "password": None, "key_file": None, "key_passphrase": None}
    log_values: dict = {"level": "INFO", "file": "", "console": True}

    if config_path is not None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise InvalidConfiguration(f"Configuration file not found: {config_path}")

        parser = configparser.ConfigParser()
        parser.read(config_file, encoding="utf-8")

        if parser.has_section("ssh"):
            ssh_section = parser["ssh"]
            for key, convert in _SSH_NUMERIC.items():
                if ssh_section.get(key):
                    ssh_values[key] = _to_number(key, ssh_section.get(key), convert)
            for key in _SSH_TEXT:
                if ssh_section.get(key):
                    ssh_values[key] = ssh_section.get(key)
            if ssh_section.get("compression_enabled"):
                ssh_values["compression_enabled"] = _to_bool(ssh_section.get("compression_enabled"))

        if parser.has_section("auth"):
            auth_section = parser["auth"]
            for key in _AUTH_KEYS:
                if auth_section.get(key):
                    auth_values[key] = auth_section.get(key)

        if parser.has_section("logging"):
            log_section = parser["logging"]
            if log_section.get("level"):
                log_values["level"] = log_section.get("level")
            if log_section.get("file"):
                log_values["file"] = log_section.get("file")
            if log_section.get("console"):
                log_values["console"] = _to_bool(log_section.get("console"))

    # Overrides win over the file
    for key, convert in _SSH_NUMERIC.items():
        if overrides.get(key) is not None:
            ssh_values[key] = _to_number(key, overrides[key], convert)
    for key in _SSH_TEXT:
        if overrides.get(key) is not None:
            ssh_values[key] = overrides[key]
    if overrides.get("compression_enabled") is not None:
        ssh_values["compression_enabled"] = bool(overrides["compression_enabled"])
    for key in _AUTH_KEYS:
        if overrides.get(key) is not None:
            auth_values[key] = overrides[key]
    for key in ("level", "file", "console"):
        if overrides.get(f"log_{key}") is not None:
            log_values[key] = overrides[f"log_{key}"]
    if overrides.get("debug"):
        log_values["level"] = "DEBUG"
        log_values["console"] = True

    missing_fields = []
    if not ssh_values.get("host"):
        missing_fields.append("host")
    if not auth_values["username"]:
        missing_fields.append("username")
    if missing_fields:
        raise MissingParameter(", ".join(missing_fields))

    ssh_config = SSHConfiguration(**ssh_values)
    ssh_config.validate()

    return AppConfig(
        ssh=ssh_config,
        auth=AuthConfig(**auth_values),
        logging=LogConfig(**log_values),
    )
