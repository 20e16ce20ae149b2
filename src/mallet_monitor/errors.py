"""Error taxonomy for the mallet monitor.

Errors raised while handling adapter events are never propagated out of the
session's event loop. The session records them, logs them and hands them to
its error listeners. Errors raised by the public session operations
(``start_scanning``, ``select`` ...) do reach the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .adapter import AdapterState


class MalletMonitorError(Exception):
    """Base class for every error reported by the mallet monitor."""


class AdapterUnavailableError(MalletMonitorError):
    """Bluetooth adapter is powered off, unauthorized or unsupported.

    Terminal for the session until the adapter reports ``POWERED_ON`` again.
    """

    def __init__(self, state: "AdapterState", reason: Optional[str] = None) -> None:
        self.state = state
        self.reason = reason
        message = f"Bluetooth adapter unavailable: {state.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ConnectionFailedError(MalletMonitorError):
    """Connection attempt to the peripheral did not succeed."""


class ReconnectExhaustedError(ConnectionFailedError):
    """Every reconnect attempt allowed by the reconnect policy has failed."""


class DisconnectedUnexpectedlyError(MalletMonitorError):
    """Connected peripheral dropped the link without being asked to."""


class DiscoveryError(MalletMonitorError):
    """Service or characteristic discovery failed.

    Only the failing discovery step is aborted; the connection stays open.
    """


class SubscriptionError(DiscoveryError):
    """Enabling notifications on a characteristic failed."""


class CharacteristicReadError(MalletMonitorError):
    """Adapter delivered a value update carrying an error instead of a payload."""


class DecodeError(MalletMonitorError):
    """Notification payload is not a valid 4-byte float."""


class UnknownPeripheralError(MalletMonitorError):
    """Selected identifier is not in the discovered candidate list."""


class SessionClosedError(MalletMonitorError):
    """Operation requested on a session that has already been shut down."""
