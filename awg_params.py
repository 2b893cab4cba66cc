"""
AmneziaWG obfuscation parameters and their validation rules.

Jc/Jmin/Jmax control junk packets sent before the handshake, S1-S4 pad the
four message types, H1-H4 replace the message type headers and I1-I5 are
operator supplied special junk packets.
"""

import logging
from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Iterator, Optional

from errors import ValidationError

logger = logging.getLogger(__name__)

UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFFFFFF

# wgctrl ioctl buffer limit for special junk packets
MAX_SPECIAL_JUNK_PACKET_LEN = 5 * 1024

INT_FIELDS = ('jc', 'jmin', 'jmax', 's1', 's2', 's3', 's4')
HEADER_FIELDS = ('h1', 'h2', 'h3', 'h4')
SPECIAL_JUNK_FIELDS = ('i1', 'i2', 'i3', 'i4', 'i5')

FIELD_LABELS = {
    'jc': 'junk_packet_count (jc)',
    'jmin': 'junk_packet_min_size (jmin)',
    'jmax': 'junk_packet_max_size (jmax)',
    's1': 'init_packet_junk_size (s1)',
    's2': 'response_packet_junk_size (s2)',
    's3': 'cookie_reply_packet_junk_size (s3)',
    's4': 'transport_packet_junk_size (s4)',
    'h1': 'init_packet_magic_header (h1)',
    'h2': 'response_packet_magic_header (h2)',
    'h3': 'underload_packet_magic_header (h3)',
    'h4': 'transport_packet_magic_header (h4)',
    'i1': 'first_special_junk_packet (i1)',
    'i2': 'second_special_junk_packet (i2)',
    'i3': 'third_special_junk_packet (i3)',
    'i4': 'fourth_special_junk_packet (i4)',
    'i5': 'fifth_special_junk_packet (i5)',
}


class ClientType(IntEnum):
    NATIVE = 0
    AMNEZIA = 1


@dataclass
class AdvancedSecurityParams:
    """Obfuscation parameters of one interface, shared by all its peers"""

    jc: int = 0
    jmin: int = 0
    jmax: int = 0

    s1: int = 0
    s2: int = 0
    s3: Optional[int] = None
    s4: Optional[int] = None

    h1: str = ''
    h2: str = ''
    h3: str = ''
    h4: str = ''

    i1: Optional[str] = None
    i2: Optional[str] = None
    i3: Optional[str] = None
    i4: Optional[str] = None
    i5: Optional[str] = None


def is_set_int(value: Optional[int]) -> bool:
    return bool(value)


def is_set_str(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ''


def is_empty(params: Optional[AdvancedSecurityParams]) -> bool:
    """True if params is missing or every field holds its zero value"""
    if params is None:
        return True
    if any(is_set_int(getattr(params, name)) for name in INT_FIELDS):
        return False
    if any(is_set_str(getattr(params, name)) for name in HEADER_FIELDS + SPECIAL_JUNK_FIELDS):
        return False
    return True


def parse_uint32(raw: str) -> int:
    """Parse a magic header value given in decimal or 0x-prefixed hex"""
    val = raw.strip()
    if val[:2].lower() == '0x':
        digits, base = val[2:], 16
        if not digits or not all(c in '0123456789abcdefABCDEF' for c in digits):
            raise ValueError(f"invalid hexadecimal value {raw!r}")
    else:
        digits, base = val, 10
        if not digits.isascii() or not digits.isdigit():
            raise ValueError(f"invalid decimal value {raw!r}")
    number = int(digits, base)
    if number > UINT32_MAX:
        raise ValueError(f"value {raw!r} out of range")
    return number


def validate(params: AdvancedSecurityParams, field: str = 'advanced_security') -> None:
    """Check the cross-field invariants, raising ValidationError on the first violation.

    Settings that are valid but most likely a mistake are only logged.
    """
    for name in INT_FIELDS:
        value = getattr(params, name)
        if value is None:
            continue
        if not 0 <= value <= UINT16_MAX:
            raise ValidationError(f"{field}.{FIELD_LABELS[name]} must be between 0 and {UINT16_MAX}")

    if params.jc > 0:
        if params.jmin == 0 or params.jmax == 0:
            raise ValidationError(f"{field}: jmin and jmax must be > 0 when jc > 0")
        if params.jmin > params.jmax:
            raise ValidationError(f"{field}: jmin must be <= jmax")
    elif params.jmin != 0 or params.jmax != 0:
        logger.warning(f"{field}: jmin/jmax set but jc=0; junk packets disabled")

    for name in HEADER_FIELDS:
        raw = getattr(params, name)
        if not is_set_str(raw):
            continue
        try:
            parse_uint32(raw)
        except ValueError as e:
            raise ValidationError(
                f"{field}.{FIELD_LABELS[name]} must be a uint32 (decimal or 0x...): {e}") from e

    for name in SPECIAL_JUNK_FIELDS:
        raw = getattr(params, name)
        if raw is None:
            continue
        val = raw.strip()
        if val == '':
            raise ValidationError(f"{field}.{FIELD_LABELS[name]} must not be empty")
        if len(val.encode('utf-8')) >= MAX_SPECIAL_JUNK_PACKET_LEN:
            raise ValidationError(
                f"{field}.{FIELD_LABELS[name]} must be shorter than {MAX_SPECIAL_JUNK_PACKET_LEN} bytes")


def client_type_for(params: Optional[AdvancedSecurityParams]) -> ClientType:
    """AmneziaWG clients are needed exactly when the interface has parameters set"""
    if is_empty(params):
        return ClientType.NATIVE
    return ClientType.AMNEZIA


def copy_if_set(params: Optional[AdvancedSecurityParams]) -> Optional[AdvancedSecurityParams]:
    """Return a trimmed copy of params, or None if the block is empty"""
    if is_empty(params):
        return None

    changes = {}
    for name in HEADER_FIELDS:
        changes[name] = (getattr(params, name) or '').strip()
    for name in SPECIAL_JUNK_FIELDS:
        raw = getattr(params, name)
        changes[name] = raw.strip() if raw is not None else None
    return replace(params, **changes)


def to_dict(params: AdvancedSecurityParams) -> dict:
    return {f.name: getattr(params, f.name) for f in fields(params)}


def from_dict(data: Optional[dict]) -> Optional[AdvancedSecurityParams]:
    if not data:
        return None
    known = {f.name for f in fields(AdvancedSecurityParams)}
    return copy_if_set(AdvancedSecurityParams(**{k: v for k, v in data.items() if k in known}))


def to_wg_quick_lines(params: Optional[AdvancedSecurityParams]) -> Iterator[str]:
    """Yield the 'Key = value' lines of an awg-quick [Interface] section"""
    if is_empty(params):
        return
    yield f"Jc = {params.jc}"
    yield f"Jmin = {params.jmin}"
    yield f"Jmax = {params.jmax}"
    yield f"S1 = {params.s1}"
    yield f"S2 = {params.s2}"
    if is_set_int(params.s3):
        yield f"S3 = {params.s3}"
    if is_set_int(params.s4):
        yield f"S4 = {params.s4}"
    for name in HEADER_FIELDS:
        if is_set_str(getattr(params, name)):
            yield f"{name.upper()} = {getattr(params, name).strip()}"
    for name in SPECIAL_JUNK_FIELDS:
        if is_set_str(getattr(params, name)):
            yield f"{name.upper()} = {getattr(params, name).strip()}"
