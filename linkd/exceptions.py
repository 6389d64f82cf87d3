"""
Engine Exceptions

Exception taxonomy for the connection intelligence engine. Telemetry and
prediction errors are absorbed close to where they happen; trust errors are
surfaced to the caller; radio errors feed the reconnect backoff.
"""


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, reason: str = None, device_id: str = None):
        super().__init__(message)
        self.reason = reason or message
        self.device_id = device_id


# Telemetry

class TelemetryError(EngineError):
    """A raw reading could not be turned into a sample."""
    pass


class OutOfOrderSampleError(TelemetryError):
    """Reading timestamp is older than the last accepted one for the device."""
    pass


class GarbledSampleError(TelemetryError):
    """Reading is missing fields or carries non-finite values."""
    pass


# Prediction

class PredictionError(EngineError):
    """Base class for prediction failures."""
    pass


class ModelUnavailableError(PredictionError):
    """No model is loaded."""
    pass


class InvalidInputError(PredictionError):
    """Feature vector contains non-finite values."""
    pass


class PredictionTimeoutError(PredictionError):
    """Model did not answer within the configured bound."""
    pass


# Trust

class TrustError(EngineError):
    """Base class for trust failures. Callers must treat these as deny."""
    pass


class TokenMismatchError(TrustError):
    """Presented token does not match the one-time exchange value."""
    pass


class AlreadyPairedError(TrustError):
    """A non-revoked trust record already exists for the device."""
    pass


class TrustRevokedError(TrustError):
    """The device's trust record has been revoked."""
    pass


class TrustPersistenceError(TrustError):
    """Trust state could not be written durably."""
    pass


# Radio / config / models

class RadioError(EngineError):
    """Radio driver failed to connect or disconnect."""
    pass


class ConfigError(EngineError):
    """Configuration is invalid."""
    pass


class ModelArtifactError(EngineError):
    """A model artifact could not be loaded or verified."""
    pass
