"""
Parse GATT Heart Rate Measurement characteristic (0x2A37) payloads.

Layout: flags(1) -> HR(1 or 2, LE) -> Energy Expended(0 or 2, LE) -> RR intervals(2 each, LE).
Flags byte: bit 0 = HR 16-bit, bit 1 = sensor contact status, bit 2 = sensor contact supported,
bit 3 = Energy Expended present, bit 4 = RR present. Bits 5-7 reserved.
RR intervals: UINT16 LE, unit 1/1024 s -> rr_s = value / 1024.
"""

import enum
import json
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HR_FORMAT_UINT16 = 0x01
SENSOR_CONTACT_STATUS = 0x02
SENSOR_CONTACT_SUPPORTED = 0x04
ENERGY_EXPENDED_PRESENT = 0x08
RR_INTERVAL_PRESENT = 0x10

RR_TICKS_PER_SECOND = 1024.0


class HrmField(enum.Enum):
    HR_MEASUREMENT = "hr_measurement"
    ENERGY_EXPENDED = "energy_expended"
    RR_INTERVAL = "rr_interval"


class HrmDecodeError(ValueError):
    """Base for malformed Heart Rate Measurement payloads."""


class MissingFlagsByte(HrmDecodeError):
    def __init__(self):
        super().__init__("HRM payload is empty (no flags byte)")


class TruncatedField(HrmDecodeError):
    """The payload ended before `field` could be read completely."""

    def __init__(self, field: HrmField, offset: int, needed: int, available: int):
        self.field = field
        self.offset = offset
        self.needed = needed
        self.available = available
        super().__init__(
            f"HRM payload too short for {field.value}: "
            f"need {needed} byte(s) at offset {offset}, {available} left"
        )


@dataclass(frozen=True)
class HrmFlags:
    hr_value_is_16bit: bool
    sensor_contact_status: bool
    sensor_contact_supported: bool
    energy_expended_present: bool
    rr_interval_present: bool

    @classmethod
    def from_byte(cls, value: int) -> "HrmFlags":
        return cls(
            hr_value_is_16bit=bool(value & HR_FORMAT_UINT16),
            sensor_contact_status=bool(value & SENSOR_CONTACT_STATUS),
            sensor_contact_supported=bool(value & SENSOR_CONTACT_SUPPORTED),
            energy_expended_present=bool(value & ENERGY_EXPENDED_PRESENT),
            rr_interval_present=bool(value & RR_INTERVAL_PRESENT),
        )

    @property
    def contact(self) -> bool | None:
        """None when the sensor cannot report contact, otherwise the contact status bit."""
        if not self.sensor_contact_supported:
            return None
        return self.sensor_contact_status


@dataclass(frozen=True)
class HeartRateRecord:
    """
    One decoded Heart Rate Measurement.

    contact and energy_expended are None when the sensor did not report them,
    which is distinct from False / 0. rr_intervals are in seconds.
    """

    hr_measurement: int
    contact: bool | None = None
    energy_expended: int | None = None
    rr_intervals: tuple[float, ...] = ()
    hr_is_16bit: bool = False

    def __str__(self) -> str:
        rr = ", ".join(f"{r:.3f}" for r in self.rr_intervals)
        return (
            f"HeartRateRecord(hr={self.hr_measurement}, contact={self.contact}, "
            f"energy_expended={self.energy_expended}, rr=[{rr}])"
        )

    def to_dict(self) -> dict:
        return {
            "hr_measurement": self.hr_measurement,
            "hr_16bit": self.hr_is_16bit,
            "contact": self.contact,
            "energy_expended": self.energy_expended,
            "rr_intervals": list(self.rr_intervals),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, obj: dict) -> "HeartRateRecord":
        """
        Build a record from its to_dict() form.

        Raises ValueError if a field is missing, has the wrong type or is out of range.
        """
        if not isinstance(obj, dict):
            raise ValueError("HR record must be a JSON object")
        hr = obj.get("hr_measurement")
        # bool is an int subclass; reject it for numeric fields
        if not isinstance(hr, int) or isinstance(hr, bool) or not 0 <= hr <= 0xFFFF:
            raise ValueError(f"Invalid hr_measurement: {hr!r}")
        contact = obj.get("contact")
        if contact is not None and not isinstance(contact, bool):
            raise ValueError(f"Invalid contact: {contact!r}")
        ee = obj.get("energy_expended")
        if ee is not None and (not isinstance(ee, int) or isinstance(ee, bool) or not 0 <= ee <= 0xFFFF):
            raise ValueError(f"Invalid energy_expended: {ee!r}")
        rr_raw = obj.get("rr_intervals", [])
        if not isinstance(rr_raw, list):
            raise ValueError(f"Invalid rr_intervals: {rr_raw!r}")
        rr: list[float] = []
        for r in rr_raw:
            if not isinstance(r, (int, float)) or isinstance(r, bool):
                raise ValueError(f"Invalid RR interval: {r!r}")
            rr.append(float(r))
        hr_16bit = obj.get("hr_16bit", False)
        if not isinstance(hr_16bit, bool):
            raise ValueError(f"Invalid hr_16bit: {hr_16bit!r}")
        return cls(
            hr_measurement=hr,
            contact=contact,
            energy_expended=ee,
            rr_intervals=tuple(rr),
            hr_is_16bit=hr_16bit,
        )

    @classmethod
    def from_json(cls, line: str) -> "HeartRateRecord":
        return cls.from_dict(json.loads(line))


def _read_u8(data, offset: int, field: HrmField) -> int:
    if len(data) - offset < 1:
        raise TruncatedField(field, offset, 1, len(data) - offset)
    return data[offset]


def _read_u16le(data, offset: int, field: HrmField) -> int:
    available = len(data) - offset
    if available < 2:
        raise TruncatedField(field, offset, 2, max(available, 0))
    return int.from_bytes(data[offset : offset + 2], "little")


def parse_hrm(data: bytes) -> HeartRateRecord:
    """
    Parse a Heart Rate Measurement characteristic value.

    Raises MissingFlagsByte for an empty payload and TruncatedField when a field
    announced by the flags does not fit in the remaining bytes.
    """
    if len(data) < 1:
        raise MissingFlagsByte()

    flags = HrmFlags.from_byte(data[0])
    logger.debug("HR data flags: %s", flags)

    offset = 1

    # Heart rate
    if flags.hr_value_is_16bit:
        hr = _read_u16le(data, offset, HrmField.HR_MEASUREMENT)
        offset += 2
    else:
        hr = _read_u8(data, offset, HrmField.HR_MEASUREMENT)
        offset += 1

    # Energy expended (kJ)
    energy_expended = None
    if flags.energy_expended_present:
        energy_expended = _read_u16le(data, offset, HrmField.ENERGY_EXPENDED)
        offset += 2

    # RR intervals: non-overlapping UINT16 LE pairs up to the end of the payload
    rr: list[float] = []
    if flags.rr_interval_present:
        while offset < len(data):
            raw = _read_u16le(data, offset, HrmField.RR_INTERVAL)
            rr.append(raw / RR_TICKS_PER_SECOND)
            offset += 2

    return HeartRateRecord(
        hr_measurement=hr,
        contact=flags.contact,
        energy_expended=energy_expended,
        rr_intervals=tuple(rr),
        hr_is_16bit=flags.hr_value_is_16bit,
    )
