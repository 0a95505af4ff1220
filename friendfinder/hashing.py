"""
Phone number hashing used as document keys for friend discovery.

The hash is a 32-bit rolling checksum (``h = h * 31 + c`` over UTF-16 code
units), rendered as the hex of its absolute value. It has to match the keys
already written by the mobile client, so it is not a cryptographic hash and
offers no real protection against enumeration of the phone keyspace.
"""

INT32_MASK = 0xFFFFFFFF


def _to_int32(value: int) -> int:
    value &= INT32_MASK
    return value - (1 << 32) if value & 0x80000000 else value


def _utf16_code_units(value: str):
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield int.from_bytes(data[i:i + 2], "little")


def hash_phone_number(phone_number: str) -> str:
    h = 0
    for unit in _utf16_code_units(phone_number):
        h = _to_int32(h * 31 + unit)
    return format(abs(h), "x")
