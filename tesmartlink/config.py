"""Configuration management for the TESmart link library."""

import logging
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ModuleNotFoundError:
    try:
        import tomli as tomllib
    except ModuleNotFoundError:
        tomllib = None

from .protocol import MAX_INPUT, MIN_INPUT

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "tesmartlink" / "config.toml"

DEFAULT_CONNECTION_CONFIG = {
    "ip": "192.168.1.10",
    "port": 5000,
    "poll_interval_ms": 1000,
    "fast_mode": False,
    "get_timeout_ms": 600,
    "set_timeout_ms": 450,
    "verify_after_set": True,
    "switch_suppress_ms": 800,
    "ports": {},
}

_POSITIVE_INT_KEYS = (
    "poll_interval_ms",
    "get_timeout_ms",
    "set_timeout_ms",
    "switch_suppress_ms",
)
_BOOL_KEYS = ("fast_mode", "verify_after_set")


class PortMeta:
    """Display metadata for one KVM input."""

    def __init__(self, name: str, icon: str = ""):
        self.name = name
        self.icon = icon

    def __eq__(self, other) -> bool:
        if not isinstance(other, PortMeta):
            return NotImplemented
        return (self.name, self.icon) == (other.name, other.icon)

    def __repr__(self) -> str:
        return f"PortMeta(name='{self.name}', icon='{self.icon}')"


def default_port_name(port_number: int) -> str:
    return f"Port {port_number}"


class Connection:
    """Represents a single KVM connection configuration."""

    def __init__(self, name: str, config: Dict[str, Any], base_dir: Optional[Path] = None):
        """Initialize a connection.

        Args:
            name: Connection name
            config: Connection configuration dictionary
            base_dir: Directory that relative icon paths are resolved against
        """
        self.name = name
        self.base_dir = base_dir
        self.ip = config.get("ip", DEFAULT_CONNECTION_CONFIG["ip"])
        self.port = config.get("port", DEFAULT_CONNECTION_CONFIG["port"])
        self.poll_interval_ms = config.get("poll_interval_ms", DEFAULT_CONNECTION_CONFIG["poll_interval_ms"])
        self.fast_mode = config.get("fast_mode", DEFAULT_CONNECTION_CONFIG["fast_mode"])
        self.get_timeout_ms = config.get("get_timeout_ms", DEFAULT_CONNECTION_CONFIG["get_timeout_ms"])
        self.set_timeout_ms = config.get("set_timeout_ms", DEFAULT_CONNECTION_CONFIG["set_timeout_ms"])
        self.verify_after_set = config.get("verify_after_set", DEFAULT_CONNECTION_CONFIG["verify_after_set"])
        self.switch_suppress_ms = config.get(
            "switch_suppress_ms", DEFAULT_CONNECTION_CONFIG["switch_suppress_ms"]
        )

        # Every input is always present
        ports = config.get("ports", {})
        self.ports: Dict[int, PortMeta] = {}
        for number in range(MIN_INPUT, MAX_INPUT + 1):
            self.ports[number] = ports.get(number) or PortMeta(default_port_name(number))

    # Timings in seconds, as the client and coordinator consume them
    @property
    def get_timeout(self) -> float:
        return self.get_timeout_ms / 1000.0

    @property
    def set_timeout(self) -> float:
        return self.set_timeout_ms / 1000.0

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def switch_suppress(self) -> float:
        return self.switch_suppress_ms / 1000.0

    def resolve_port(self, port_identifier: str) -> Optional[int]:
        """Resolve a port identifier (name or number) to a port number.

        Args:
            port_identifier: Port name or number (as string)

        Returns:
            Port number if valid, None if invalid
        """
        try:
            port_num = int(port_identifier)
            if MIN_INPUT <= port_num <= MAX_INPUT:
                return port_num
            return None
        except ValueError:
            wanted = port_identifier.strip().lower()
            for number, meta in self.ports.items():
                if meta.name.lower() == wanted:
                    return number
            return None

    def get_port_name(self, port_number: int) -> Optional[str]:
        """Get the display name for a port number."""
        meta = self.ports.get(port_number)
        return meta.name if meta else None

    def icon_path(self, port_number: int) -> Optional[Path]:
        """Get the icon file for a port, relative paths resolved against the config directory."""
        meta = self.ports.get(port_number)
        if meta is None or not meta.icon:
            return None
        path = Path(meta.icon).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    def __repr__(self) -> str:
        """String representation."""
        return f"Connection(name='{self.name}', ip='{self.ip}', port={self.port})"


class Config:
    """Configuration manager for TESmart link.

    Configuration format:
        default_connection = "desk"

        [connections.desk]
        ip = "192.168.1.10"
        port = 5000
        poll_interval_ms = 1000
        fast_mode = false
        get_timeout_ms = 600
        set_timeout_ms = 450
        verify_after_set = true
        switch_suppress_ms = 800

        [connections.desk.ports]
        1 = { name = "Workstation", icon = "icons/workstation.png" }
        2 = { name = "Proxmox" }

        [connections.lab]
        ip = "10.1.99.1"
    """

    def __init__(self, config_path: Optional[Path] = None, connection_name: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Path to config file (default: ~/.config/tesmartlink/config.toml)
            connection_name: Name of connection to use (overrides default_connection)
        """
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._connections: Dict[str, Connection] = {}
        self._default_connection_name: Optional[str] = None
        self._requested_connection_name = connection_name
        self._load_config()

    @property
    def config_dir(self) -> Path:
        return self.config_path.parent

    def _use_defaults(self):
        self._connections["default"] = Connection("default", DEFAULT_CONNECTION_CONFIG, self.config_dir)
        self._default_connection_name = "default"

    def _load_config(self):
        """Load configuration from TOML file."""
        if not self.config_path.exists():
            LOGGER.debug("no config at %s, using defaults", self.config_path)
            self._use_defaults()
            return

        if tomllib is None:
            warnings.warn(
                "TOML library not available. Install 'tomli' for Python < 3.11 "
                "to use configuration files. Using default configuration.",
                UserWarning
            )
            self._use_defaults()
            return

        try:
            with open(self.config_path, "rb") as f:
                toml_config = tomllib.load(f)

            if "connections" not in toml_config:
                raise ValueError(
                    f"Invalid config format in {self.config_path}. "
                    "Missing [connections] section."
                )

            self._load_multi_connection_config(toml_config)

        except (OSError, ValueError, TypeError, AttributeError) as e:
            # tomllib.TOMLDecodeError is a ValueError
            warnings.warn(
                f"Failed to load config from {self.config_path}: {e}. "
                "Using default configuration.",
                UserWarning
            )
            self._connections.clear()
            self._use_defaults()

    def _load_multi_connection_config(self, toml_config: Dict[str, Any]):
        """Load multi-connection configuration format."""
        self._default_connection_name = toml_config.get("default_connection")

        for conn_name, conn_data in toml_config["connections"].items():
            config = DEFAULT_CONNECTION_CONFIG.copy()

            if "ip" in conn_data:
                ip = str(conn_data["ip"]).strip()
                if ip:
                    config["ip"] = ip
                else:
                    self._warn_value(conn_name, "ip", conn_data["ip"])
            if "port" in conn_data:
                port = conn_data["port"]
                if _is_int(port) and 1 <= port <= 65535:
                    config["port"] = port
                else:
                    self._warn_value(conn_name, "port", port)
            for key in _POSITIVE_INT_KEYS:
                if key in conn_data:
                    value = conn_data[key]
                    if _is_int(value) and value > 0:
                        config[key] = value
                    else:
                        self._warn_value(conn_name, key, value)
            for key in _BOOL_KEYS:
                if key in conn_data:
                    value = conn_data[key]
                    if isinstance(value, bool):
                        config[key] = value
                    else:
                        self._warn_value(conn_name, key, value)

            if "ports" in conn_data:
                config["ports"] = self._parse_ports(conn_data["ports"])

            self._connections[conn_name] = Connection(conn_name, config, self.config_dir)

        if not self._default_connection_name and self._connections:
            self._default_connection_name = list(self._connections.keys())[0]

    def _warn_value(self, conn_name: str, key: str, value: Any):
        warnings.warn(
            f"Connection '{conn_name}' has invalid value {value!r} for '{key}'. "
            f"Using default {DEFAULT_CONNECTION_CONFIG[key]!r}.",
            UserWarning
        )

    def _parse_ports(self, ports_dict: Dict[str, Any]) -> Dict[int, PortMeta]:
        """Parse and validate port metadata.

        Each entry is either a table with ``name``/``icon`` or a bare name string.

        Args:
            ports_dict: Dictionary of port numbers to metadata

        Returns:
            Validated port metadata
        """
        ports = {}
        for key, entry in ports_dict.items():
            try:
                number = int(key)
            except (ValueError, TypeError):
                warnings.warn(f"Port key '{key}' is not a number. Ignoring.", UserWarning)
                continue
            if not MIN_INPUT <= number <= MAX_INPUT:
                warnings.warn(
                    f"Port key '{key}' is out of range. "
                    f"Must be between {MIN_INPUT} and {MAX_INPUT}. Ignoring.",
                    UserWarning
                )
                continue

            if isinstance(entry, str):
                name, icon = entry, ""
            elif isinstance(entry, dict):
                name, icon = entry.get("name", ""), entry.get("icon", "")
            else:
                warnings.warn(f"Port '{key}' has invalid value. Ignoring.", UserWarning)
                continue
            name = str(name).strip() or default_port_name(number)
            ports[number] = PortMeta(name, str(icon).strip())
        return ports

    @property
    def active_connection(self) -> Connection:
        """Get the active connection.

        Returns:
            Active Connection instance

        Raises:
            ValueError: If requested connection doesn't exist
        """
        if self._requested_connection_name:
            if self._requested_connection_name not in self._connections:
                available = ", ".join(self._connections.keys())
                raise ValueError(
                    f"Connection '{self._requested_connection_name}' not found. "
                    f"Available connections: {available}"
                )
            return self._connections[self._requested_connection_name]

        if self._default_connection_name and self._default_connection_name in self._connections:
            return self._connections[self._default_connection_name]

        if self._connections:
            return list(self._connections.values())[0]

        return Connection("default", DEFAULT_CONNECTION_CONFIG, self.config_dir)

    @property
    def connection_names(self) -> list:
        """Get list of configured connection names."""
        return list(self._connections.keys())

    @property
    def default_connection_name(self) -> Optional[str]:
        """Get the default connection name."""
        return self._default_connection_name

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"Config(path='{self.config_path}', "
            f"connections={list(self._connections.keys())}, "
            f"active='{self.active_connection.name}')"
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_config(config_path: Optional[Path] = None, connection_name: Optional[str] = None) -> Config:
    """Load configuration from file.

    Args:
        config_path: Path to config file (default: ~/.config/tesmartlink/config.toml)
        connection_name: Name of connection to use

    Returns:
        Config instance
    """
    return Config(config_path, connection_name)
