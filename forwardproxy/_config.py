import tomllib
from pathlib import Path
from typing import Any, Mapping, NamedTuple, NewType, Tuple, Union

Port = NewType("Port", int)
Domain = NewType("Domain", str)


class Configuration(NamedTuple):
    """
    Everything the proxy needs, fixed before the first connection is
    accepted. Shared read-only between all connection handlers.
    """
    port: Port
    username: str
    password: str
    allowed_hosts: Tuple[Domain, ...] = ()
    listen_host: str = "0.0.0.0"
    connect_timeout: float = 10
    idle_timeout: float = 300
    request_timeout: float = 10


################################################################
#                  Parsing
################################################################

def parse_port(value: Any) -> Port:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port number: {value!r}")
    if port not in range(65536):
        raise ValueError(f"Port number out of range: {port}")
    return Port(port)


def parse_timeout(name: str, value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {name}: {value!r}")
    if not timeout > 0:
        raise ValueError(f"{name} must be positive, got {timeout}")
    return timeout


def parse_allowed_hosts(value: Union[str, Any]) -> Tuple[Domain, ...]:
    """
    Accepts a comma-separated string or a list of strings.
    Blank entries are dropped; an empty result means "allow all".
    """
    if isinstance(value, str):
        value = value.split(",")
    hosts = []
    for entry in value:
        if not isinstance(entry, str):
            raise ValueError(f"Allowed host must be a string, got {entry!r}")
        if entry.strip():
            hosts.append(Domain(entry.strip()))
    return tuple(hosts)


def parse_configuration_v1(raw: Mapping[str, Any]) -> Configuration:
    """
    Build a Configuration from a mapping of (version 1) settings.

    Raises ValueError for anything it cannot make sense of.
    """
    version = raw.get("version", 1)
    if version != 1:
        raise ValueError(f"Unsupported configuration version: {version!r}")

    known = set(Configuration._fields) | {"version"}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    defaults = Configuration._field_defaults
    username = raw.get("username", "proxyuser")
    password = raw.get("password", "proxypass")
    if not isinstance(username, str) or not isinstance(password, str):
        raise ValueError("username and password must be strings")

    return Configuration(
        port=parse_port(raw.get("port", 8080)),
        username=username,
        password=password,
        allowed_hosts=parse_allowed_hosts(raw.get("allowed_hosts", ())),
        listen_host=str(raw.get("listen_host", defaults["listen_host"])),
        connect_timeout=parse_timeout("connect_timeout", raw.get("connect_timeout", defaults["connect_timeout"])),
        idle_timeout=parse_timeout("idle_timeout", raw.get("idle_timeout", defaults["idle_timeout"])),
        request_timeout=parse_timeout("request_timeout", raw.get("request_timeout", defaults["request_timeout"])),
    )


################################################################
#                  Sources
################################################################

ENVIRONMENT_VARIABLES = {
    "PORT": "port",
    "PROXY_USER": "username",
    "PROXY_PASS": "password",
    "WHITELIST_HOSTS": "allowed_hosts",
    "PROXY_LISTEN_HOST": "listen_host",
    "PROXY_CONNECT_TIMEOUT": "connect_timeout",
    "PROXY_IDLE_TIMEOUT": "idle_timeout",
    "PROXY_REQUEST_TIMEOUT": "request_timeout",
}


def load_configuration_from_environment(environ: Mapping[str, str]) -> Configuration:
    raw = {key: environ[var] for var, key in ENVIRONMENT_VARIABLES.items() if var in environ}
    return parse_configuration_v1(raw)


def load_configuration_from_file(path: Union[str, Path]) -> Configuration:
    """Read a TOML configuration file."""
    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"{path}: {e}") from e
    return parse_configuration_v1(raw)
