"""TESmart KVM remote-control library.

A Python library for driving a TESmart 16-port HDMI KVM switch over TCP/IP.
Supports input switching, buzzer and LED timeout control, the ASCII network
configuration protocol, and background polling of the active input.
"""

__version__ = "0.1.0"

from .client import NetworkConfig, Target, TESmartKVM
from .config import Config, Connection, PortMeta, load_config
from .exceptions import (
    TESmartError,
    CommunicationError,
    UnreachableError,
    NoReplyError,
    BadReplyError,
    BadArgumentError,
)
from .poller import PendingSwitch, PollingCoordinator

__all__ = [
    "TESmartKVM",
    "Target",
    "NetworkConfig",
    "PollingCoordinator",
    "PendingSwitch",
    "Config",
    "Connection",
    "PortMeta",
    "load_config",
    "TESmartError",
    "CommunicationError",
    "UnreachableError",
    "NoReplyError",
    "BadReplyError",
    "BadArgumentError",
]
