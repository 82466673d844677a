"""Domain-specific errors for btbridge."""


class BridgeError(Exception):
    """Base error for btbridge."""


class ConfigLoadError(BridgeError):
    """Raised when the configuration file cannot be read."""


class ConfigValidationError(BridgeError):
    """Raised when the configuration file does not conform to schema."""


class DeviceNotFoundError(BridgeError):
    """Raised when a device id is absent from every discovery catalog."""


class AlreadyConnectedError(BridgeError):
    """Raised when connecting a device that already has a connection record."""


class NotConnectedError(BridgeError):
    """Raised when operating on a device without a live connection."""


class RadioUnavailableError(BridgeError):
    """Raised when the Bluetooth radio is not powered on or not present."""


class NoWritableCharacteristicError(BridgeError):
    """Raised when a BLE peripheral exposes no writable characteristic."""


class BindExhaustedError(BridgeError):
    """Raised when the gateway cannot bind any port in its retry window."""


class MalformedEnvelopeError(BridgeError):
    """Raised when a gateway message is not a valid request envelope."""


class RequestFailedError(BridgeError):
    """Raised by the client when the gateway reports an unsuccessful operation."""


class AdapterFailure(BridgeError):
    """Wraps errors raised by a platform command or the radio stack."""


class DeviceDiscoveryError(AdapterFailure):
    """Raised when Bluetooth device discovery command(s) fail."""


class TransportError(AdapterFailure):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on connect failures."""


class TransportSendError(TransportError):
    """Raised when payload sending fails."""


class TransportTimeoutError(TransportError):
    """Raised when a transport operation times out."""
