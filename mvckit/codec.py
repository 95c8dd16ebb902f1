"""
Conversion between driver column values and typed application values.

Every column a query returns passes through decode() together with the
database type name the schema declares for it. The result is an SQLValue,
a closed tagged value, so consumers branch on ``kind`` instead of probing
Python types.

Numeric literals are parsed from their textual form and range checked the
way the declared type would store them: INT-family columns must fit in 32
bits, BIGINT in 64, FLOAT and DECIMAL are rounded through IEEE single
precision. Anything that does not parse is a ValueDecodeError; nothing is
silently coerced to a default.
"""
import re
import struct
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from mvckit.errors import ValueDecodeError


class ValueKind(str, Enum):
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    BYTES = "bytes"
    NULL = "null"


@dataclass(frozen=True)
class SQLValue:
    kind: ValueKind
    value: Any = None

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def __str__(self):
        return "" if self.is_null else str(self.value)


NULL = SQLValue(ValueKind.NULL, None)

INT32_RANGE = (-(2**31), 2**31 - 1)
INT64_RANGE = (-(2**63), 2**63 - 1)

INT32_TYPES = frozenset({"INT", "TINYINT", "SMALLINT", "MEDIUMINT"})
FLOAT32_TYPES = frozenset({"FLOAT", "DECIMAL"})
TEXT_TYPES = frozenset({
    "CHAR", "VARCHAR", "TINYTEXT", "MEDIUMTEXT", "LONGTEXT", "TEXT", "JSON",
    "BLOB", "TINYBLOB", "MEDIUMBLOB", "LONGBLOB",
})

# Spellings reported by other backends' introspection
TYPE_ALIASES = {
    "INTEGER": "INT",
    "BOOLEAN": "TINYINT",
    "BOOL": "TINYINT",
    "REAL": "DOUBLE",
    "NUMERIC": "DECIMAL",
    "DEC": "DECIMAL",
    "CHARACTER": "VARCHAR",
    "NCHAR": "CHAR",
    "NVARCHAR": "VARCHAR",
    "STRING": "VARCHAR",
    "CLOB": "TEXT",
    "BINARY": "BLOB",
    "VARBINARY": "BLOB",
}

DATE_LAYOUT = "%Y-%m-%d"
DATETIME_LAYOUTS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S.%f")
TIME_LAYOUTS = ("%H:%M:%S", "%H:%M:%S.%f")

_INT_LITERAL = re.compile(r"^[+-]?\d+$")
_YEAR_LITERAL = re.compile(r"^\d{4}$")
_PRECISION = re.compile(r"\(.*?\)")


def normalize_type_name(type_name: str) -> str:
    """Reduce 'varchar(255)', 'INT UNSIGNED' and friends to a bare type keyword."""
    name = _PRECISION.sub("", type_name or "").strip().upper()
    if not name:
        return ""
    name = name.split()[0]
    return TYPE_ALIASES.get(name, name)


def _text(raw) -> str:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8", errors="surrogateescape")
    if isinstance(raw, bool):
        return "1" if raw else "0"
    return str(raw)


def _parse_int(type_name: str, raw, bounds: tuple[int, int]) -> SQLValue:
    text = _text(raw)
    if not _INT_LITERAL.match(text):
        raise ValueDecodeError(type_name, raw, "not an integer literal")
    value = int(text)
    if not bounds[0] <= value <= bounds[1]:
        raise ValueDecodeError(type_name, raw, "out of range")
    return SQLValue(ValueKind.INTEGER, value)


def _parse_float(type_name: str, raw, single: bool) -> SQLValue:
    text = _text(raw)
    if not text or "_" in text or text != text.strip():
        raise ValueDecodeError(type_name, raw, "not a numeric literal")
    try:
        value = float(text)
        if single:
            value = struct.unpack("f", struct.pack("f", value))[0]
    except (ValueError, OverflowError) as exc:
        raise ValueDecodeError(type_name, raw, str(exc)) from exc
    return SQLValue(ValueKind.FLOAT, value)


def _parse_layouts(type_name: str, raw, layouts) -> datetime:
    text = _text(raw)
    for layout in layouts:
        try:
            return datetime.strptime(text, layout)
        except ValueError:
            continue
    raise ValueDecodeError(type_name, raw, "expected " + " or ".join(layouts))


def _decode_temporal(type_name: str, raw) -> SQLValue:
    if type_name == "DATE":
        if isinstance(raw, date):
            return SQLValue(ValueKind.TIMESTAMP, raw)
        return SQLValue(ValueKind.TIMESTAMP, _parse_layouts(type_name, raw, (DATE_LAYOUT,)).date())

    if type_name in ("DATETIME", "TIMESTAMP"):
        if isinstance(raw, datetime):
            return SQLValue(ValueKind.TIMESTAMP, raw)
        return SQLValue(ValueKind.TIMESTAMP, _parse_layouts(type_name, raw, DATETIME_LAYOUTS))

    if type_name == "TIME":
        if isinstance(raw, time):
            return SQLValue(ValueKind.TIMESTAMP, raw)
        if isinstance(raw, timedelta):
            # MySQL drivers hand TIME columns back as a duration
            if not timedelta(0) <= raw < timedelta(days=1):
                raise ValueDecodeError(type_name, raw, "outside a single day")
            return SQLValue(ValueKind.TIMESTAMP, (datetime.min + raw).time())
        return SQLValue(ValueKind.TIMESTAMP, _parse_layouts(type_name, raw, TIME_LAYOUTS).time())

    # YEAR
    text = _text(raw)
    if not _YEAR_LITERAL.match(text):
        raise ValueDecodeError(type_name, raw, "expected %Y")
    return SQLValue(ValueKind.TIMESTAMP, datetime.strptime(text, "%Y"))


def decode(type_name: str, raw) -> SQLValue:
    """Turn a raw driver value into an SQLValue according to its column type."""
    if raw is None:
        return NULL

    name = normalize_type_name(type_name)

    if name == "BIT":
        data = raw if isinstance(raw, (bytes, bytearray, memoryview)) else _text(raw).encode()
        data = bytes(data)
        if not data:
            raise ValueDecodeError(name, raw, "empty bit value")
        return SQLValue(ValueKind.BYTES, data[:1])
    if name in INT32_TYPES:
        return _parse_int(name, raw, INT32_RANGE)
    if name == "BIGINT":
        return _parse_int(name, raw, INT64_RANGE)
    if name in FLOAT32_TYPES:
        return _parse_float(name, raw, single=True)
    if name == "DOUBLE":
        return _parse_float(name, raw, single=False)
    if name in TEXT_TYPES:
        return SQLValue(ValueKind.TEXT, _text(raw))
    if name in ("DATE", "DATETIME", "TIMESTAMP", "TIME", "YEAR"):
        return _decode_temporal(name, raw)

    return infer(raw)


def infer(raw) -> SQLValue:
    """Tag a value whose column carries no declared type (aggregates, raw SQL)."""
    if raw is None:
        return NULL
    if isinstance(raw, SQLValue):
        return raw
    if isinstance(raw, bool):
        return SQLValue(ValueKind.INTEGER, int(raw))
    if isinstance(raw, int):
        return SQLValue(ValueKind.INTEGER, raw)
    if isinstance(raw, (float, Decimal)):
        return SQLValue(ValueKind.FLOAT, float(raw))
    if isinstance(raw, (datetime, date, time)):
        return SQLValue(ValueKind.TIMESTAMP, raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return SQLValue(ValueKind.BYTES, bytes(raw))
    return SQLValue(ValueKind.TEXT, str(raw))


def encode(value):
    """Prepare a value for binding, using the same layouts decode() reads back."""
    if isinstance(value, SQLValue):
        return encode(value.value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime(DATETIME_LAYOUTS[0])
    if isinstance(value, date):
        return value.strftime(DATE_LAYOUT)
    if isinstance(value, time):
        return value.strftime(TIME_LAYOUTS[0])
    return value
