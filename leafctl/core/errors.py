"""Domain-specific errors for leafctl."""


class LeafctlError(Exception):
    """Base error for leafctl."""


class CatalogValidationError(LeafctlError):
    """Raised when a command catalog does not conform to schema or semantics."""


class CatalogLoadError(LeafctlError):
    """Raised when reading command catalog sources fails."""


class CommandResolutionError(LeafctlError):
    """Raised when a command name cannot be found in the loaded catalog."""


class SettingsError(LeafctlError):
    """Raised when the settings file is unreadable or invalid."""


class ConnectionStateError(LeafctlError):
    """Raised when an operation is not allowed in the current connection state."""


class TransportError(LeafctlError):
    """Base transport error."""


class RadioOffFailure(TransportError):
    """Raised when the Bluetooth radio is off and cannot be powered on."""


class ScanFailure(TransportError):
    """Raised when a BLE scan fails in the underlying stack."""


class ConnectError(TransportError):
    """Raised when the adapter refuses or drops a connection attempt."""


class ConnectTimeout(ConnectError):
    """Raised when a connection attempt does not complete in time."""


class ServiceNotFound(TransportError):
    """Raised when the required GATT service or characteristic is missing."""


class AdapterError(LeafctlError):
    """Base error for ELM327 adapter exchanges."""


class AdapterInitFailure(AdapterError):
    """Raised when an AT initialization step is not acknowledged."""


class CommandTimeout(AdapterError):
    """Raised when the adapter prompt does not arrive within the timeout."""


class AdapterResponseError(AdapterError):
    """Raised when the adapter or ECU answers with an error or negative response."""


class FrameParseError(LeafctlError):
    """Raised when CAN frames cannot be reassembled into one message."""


class ProbeFailure(LeafctlError):
    """Raised when the post-connect diagnostic probe does not succeed."""


class MockPresetError(LeafctlError):
    """Raised when a mock battery preset name is unknown."""
