class RelayError(Exception):
    """Base class for every error raised by the relay."""


class PermissionDenied(RelayError):
    """The inbox source refused access. Blocks start(); never retried automatically."""


class InvalidConfiguration(RelayError):
    """Webhook or runtime configuration rejected before any network attempt."""


class NetworkDeliveryFailure(RelayError):
    """A webhook POST failed (non-2xx, timeout, connection error). Logged, never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PlatformCapabilityFailure(RelayError):
    """A host capability (persistent context, power management) call failed."""


class TransientPollError(RelayError):
    """A single poll cycle could not read the inbox."""
