
class BridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""


class TelemetryValidationError(BridgeError):
    def __init__(self, reason: str, payload=None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.payload = payload


class InvalidAction(BridgeError):
    def __init__(self, action) -> None:
        super().__init__(f"Invalid action: {action!r}")
        self.action = action


class TransportUnavailable(BridgeError):
    """Broker is disconnected or did not accept/acknowledge a publish."""


class CommandNotAcknowledged(TransportUnavailable):
    """Publish was queued by the client but no PUBACK arrived in time.

    The message stays in the client's queue and may still be delivered
    after a reconnect.
    """


class StoreUnavailable(BridgeError):
    """History store write or query failed (timeout, connection loss, ...)."""


class BroadcastFailure(BridgeError):
    def __init__(self, failed: int, total: int) -> None:
        super().__init__(f"{failed} of {total} viewers unreachable")
        self.failed = failed
        self.total = total
