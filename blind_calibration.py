"""Blind calibration and position estimate.

Tuya roller-blind motors only report ``open``, ``close`` and ``stop`` on their
default property. Calibration has the user drive the blind end to end while we
time the transitions:

    phase 0  open   (blind is opening, started by us)
    phase 1  stop   (fully open: start of the close measurement)
    phase 2  close
    phase 3  stop   (fully closed: full close time measured)
    phase 4  open
    phase 5  stop   (fully open: full open time measured)
    phase 6  open = accept / anything else = discard
             (only if the blind already had a calibration)

Once both travel times are known, the percentage (0 = open, 100 = closed) is
integrated from the duration of each movement.

Possible changes of the default property are ``open|close <-> stop`` and,
less obviously, ``open -> open`` / ``close -> close`` when the user presses
the same button twice. The latter are absorbed so they do not disturb the
phase sequence or the time measurements.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from device_registry import DeviceDefinition
from gateway_errors import CalibrationBusy, NotCalibrated

logger = logging.getLogger(__name__)

OPEN = "open"
CLOSE = "close"
STOP = "stop"

DEFAULT_PROP_IDX = 1
BLIND_TYPE = "blind"

ACCEPT_PHASE = 6


@dataclass
class CalibrationSession:
    device: DeviceDefinition
    phase: int = 0
    new_full_close_time_ms: Optional[float] = None
    new_full_open_time_ms: Optional[float] = None


@dataclass(frozen=True)
class CalibrationStep:
    message: str
    finished: bool = False
    aborted: bool = False


class BlindCalibrator:
    """Owns the single calibration session of the process, if any."""

    def __init__(self) -> None:
        self._session: CalibrationSession | None = None

    @property
    def device(self) -> DeviceDefinition | None:
        return self._session.device if self._session is not None else None

    @property
    def phase(self) -> int | None:
        return self._session.phase if self._session is not None else None

    def is_calibrating(self, device: DeviceDefinition) -> bool:
        return self._session is not None and self._session.device is device

    def begin(self, device: DeviceDefinition) -> CalibrationSession:
        if self._session is not None:
            raise CalibrationBusy(f"Already calibrating device {self._session.device.name}.")
        self._session = CalibrationSession(device=device)
        logger.info("Blind calibration: Opening %s completely...", device.name)
        return self._session

    def abort(self) -> None:
        self._session = None

    def progress(self, device: DeviceDefinition, value: str, now_ms: float) -> CalibrationStep:
        """Advance the calibration of ``device`` by one default-property change.

        Must run before ``device.default_prop_last_change_ms`` is updated for this
        event, since the travel times are measured against it.
        """
        session = self._session
        if session is None or session.device is not device:
            raise RuntimeError(f"Device {device.name} is not being calibrated.")

        name = device.name
        phase = session.phase
        session.phase += 1

        if phase in (0, 4):
            if value != OPEN:
                return self._abort(f"Blind calibration: You did not open {name}, calibration aborted.")
            return self._info(f"Blind calibration: {name} is opening...")

        if phase == 2:
            if value != CLOSE:
                return self._abort(f"Blind calibration: You did not close {name}, calibration aborted.")
            return self._info(f"Blind calibration: {name} is closing...")

        if phase in (1, 3, 5):
            repeated = CLOSE if phase == 3 else OPEN
            if value == repeated:
                session.phase -= 1
                return CalibrationStep(f"Blind calibration: {name} is still {'closing' if phase == 3 else 'opening'}...")
            if value != STOP:
                return self._abort(f"Blind calibration: {name} not stopped, calibration aborted.")

            if phase == 1:
                return self._info(
                    f"Blind calibration: Now close {name} and stop immediately when it is completely closed."
                )

            elapsed = _since_last_change(device, now_ms)
            if phase == 3:
                session.new_full_close_time_ms = elapsed
                return self._info(
                    f"Blind calibration: Now open {name} and stop immediately when it is completely open."
                )

            session.new_full_open_time_ms = elapsed
            if device.is_calibrated:
                return self._info(
                    f"Blind calibration: {name}: fullCloseTime: New: {_secs(session.new_full_close_time_ms)} s, "
                    f"current: {_secs(device.full_close_time_ms)} s; "
                    f"fullOpenTime: New: {_secs(session.new_full_open_time_ms)} s, "
                    f"current: {_secs(device.full_open_time_ms)} s.\n"
                    'Press "Open" to apply the new calibration. To keep the current calibration, press "Close".'
                )

            self._commit(session)
            return self._finish(
                f"Blind calibration: {name}: fullCloseTime: {_secs(device.full_close_time_ms)} s, "
                f"fullOpenTime: {_secs(device.full_open_time_ms)} s.\n"
                "Calibration finished successfully."
            )

        # ACCEPT_PHASE
        if value == OPEN:
            self._commit(session)
            return self._finish(
                f"Blind calibration: {name}: New calibration applied. Calibration finished successfully."
            )
        return self._finish(
            f"Blind calibration: {name}: New calibration discarded. Calibration has not been changed."
        )

    @staticmethod
    def _commit(session: CalibrationSession) -> None:
        device = session.device
        device.full_close_time_ms = session.new_full_close_time_ms
        device.full_open_time_ms = session.new_full_open_time_ms
        device.percentage = 0.0

    @staticmethod
    def _info(message: str) -> CalibrationStep:
        logger.info("%s", message)
        return CalibrationStep(message)

    def _abort(self, message: str) -> CalibrationStep:
        self._session = None
        logger.error("%s", message)
        return CalibrationStep(message, finished=True, aborted=True)

    def _finish(self, message: str) -> CalibrationStep:
        self._session = None
        logger.info("%s", message)
        return CalibrationStep(message, finished=True)


def _secs(ms: Optional[float]) -> str:
    if ms is None:
        return "?"
    return f"{float(ms) / 1000:.1f}"


def _since_last_change(device: DeviceDefinition, now_ms: float) -> float:
    if device.default_prop_last_change_ms is None:
        return 0.0
    return now_ms - float(device.default_prop_last_change_ms)


def _full_time_ms(device: DeviceDefinition, direction: str) -> float:
    # Closing counts up towards 100, opening counts down, so the open time is negated.
    if direction == CLOSE:
        return float(device.full_close_time_ms)  # type: ignore[arg-type]
    return -float(device.full_open_time_ms)  # type: ignore[arg-type]


def clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def update_percentage(device: DeviceDefinition, now_ms: float) -> float:
    """Integrate the movement that just ended with ``stop`` into the percentage.

    Uses the previous default-property value and change time, so it must run
    before those are updated.
    """
    if device.percentage is None or not device.is_calibrated:
        raise NotCalibrated(f"Blind {device.name} is not calibrated, please calibrate first.")

    delta_t = _since_last_change(device, now_ms)
    full_time = _full_time_ms(device, CLOSE if device.default_prop_last_value == CLOSE else OPEN)

    # A blind that runs into its end position without being stopped reports
    # 'stop' only after its own timeout, so delta_t overshoots the travel time.
    device.percentage = clamp_percentage(float(device.percentage) + 100.0 * delta_t / full_time)

    logger.info("Blind %s is at %d %%.", device.name, int(device.percentage))
    return device.percentage


def plan_move(device: DeviceDefinition, target: float) -> tuple[str, float]:
    """Return ``(direction, duration_ms)`` to drive the blind from its percentage to ``target``."""
    if device.percentage is None or not device.is_calibrated:
        raise NotCalibrated(f"Blind {device.name} is not calibrated, please calibrate first.")

    delta = float(target) - float(device.percentage)
    direction = CLOSE if delta > 0 else OPEN
    delta_t = delta * _full_time_ms(device, direction) / 100.0
    return direction, abs(delta_t)
