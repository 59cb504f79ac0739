# gateway_errors.py

from __future__ import annotations


class GatewayError(RuntimeError):
    """Base class for failures that are reported back to FHEM as plain text."""


class DeviceNotFound(GatewayError):
    pass


class ConnectFailed(GatewayError):
    pass


class InvariantViolation(GatewayError):
    pass


class NotFound(GatewayError):
    pass


class NotCalibrated(GatewayError):
    pass


class CalibrationBusy(GatewayError):
    pass


class CommandRejected(GatewayError):
    """The device answered a set with a value other than the one requested."""


class InvalidRequest(GatewayError):
    """Malformed or inapplicable HTTP command (prefixed with 'Invalid request: ')."""
