"""Client for the miio UDP protocol spoken by smart-home appliances."""

from .client import ClientConfig, MiioClient
from .crypto import ConfigError, DerivedKeys, MiioError, derive_keys
from .dispatcher import CallTimeout
from .handshake import ConnectionState
from .packet import DecodeError, Packet
from .transport import BindError, TransportError

__all__ = [
    "BindError",
    "CallTimeout",
    "ClientConfig",
    "ConfigError",
    "ConnectionState",
    "DecodeError",
    "DerivedKeys",
    "MiioClient",
    "MiioError",
    "Packet",
    "TransportError",
    "derive_keys",
]
