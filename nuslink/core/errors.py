"""Domain-specific errors for nuslink."""


class NuslinkError(Exception):
    """Base error for nuslink."""


class ProfileValidationError(NuslinkError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(NuslinkError):
    """Raised when loading profile sources fails."""


class ProfileResolutionError(NuslinkError):
    """Raised when a requested profile id is not known."""


class DeviceSelectionError(NuslinkError):
    """Raised when a device hint cannot be resolved to a single peripheral."""


class TransportError(NuslinkError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when a connection cannot be established or is lost."""


class TransportSendError(TransportError):
    """Raised when a payload cannot be delivered."""


class TransportTimeoutError(TransportError):
    """Raised when a platform operation does not complete in time."""
