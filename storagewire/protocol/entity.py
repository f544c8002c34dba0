"""
Entity property model.

An entity is a schemaless row: two string keys (PartitionKey, RowKey), an
opaque concurrency token (ETag), a server Timestamp, and a mapping of
property name to :class:`EntityProperty`.  Every property travels as a
UTF-8 string plus an optional explicit EDM type tag; this module owns the
conversion in both directions.

Decoding a property picks its type, in order, from:

1. an explicit type annotation on the wire,
2. a caller supplied :data:`TypeResolver`,
3. a known :class:`EntityShape` (field name -> EdmType),
4. nothing: the value is kept as a String.

The last step is a documented degradation, not a guess: a no-metadata
payload read without a resolver or shape yields String properties for
everything, Int64 and DateTime values included.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import re
import threading
import typing
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, Mapping, NewType, Optional, Tuple, Union
from urllib.parse import quote, unquote

from storagewire.lib import error

from .types import EdmType

log = logging.getLogger(__name__)

PARTITION_KEY = "PartitionKey"
ROW_KEY = "RowKey"
TIMESTAMP = "Timestamp"
RESERVED_NAMES = (PARTITION_KEY, ROW_KEY, TIMESTAMP)

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1

## Marker for annotating 64 bit integer fields on shape classes, plain
## ``int`` maps to Int32 like the service does.
Int64 = NewType("Int64", int)

TypeResolver = Callable[[str, str, str, Any], Optional[EdmType]]

_DATETIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,7}))?)?"
    r"(Z|[+-]\d{2}:\d{2})?$"
)
_INTEGER_RE = re.compile(r"^[+-]?\d+$")

_DOUBLE_SPECIALS = {
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
    "INF": math.inf,
    "-INF": -math.inf,
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_datetime(value: datetime) -> str:
    """
    Format a datetime the way the service writes it, seven fractional
    digits and a Z suffix.  Naive datetimes are taken to be UTC.
    """
    value = _as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + "%06d0Z" % value.microsecond


def parse_datetime(text: str) -> datetime:
    """
    Parse an ISO 8601 timestamp as sent by the service.

    Accepts 0 to 7 fractional digits (the seventh is dropped, Python
    resolution is one microsecond) and an optional Z or numeric offset.
    A missing offset means UTC.  The result is always timezone aware UTC.

    Raises:
        ValueError: if the text is not such a timestamp, or falls outside
            the datetime range once its offset is applied
        TypeError: if the value is not a string
    """
    if not isinstance(text, str):
        raise TypeError(f"timestamp must be a string, not {type(text).__name__}")
    m = _DATETIME_RE.match(text.strip())
    if not m:
        raise ValueError(f"not a timestamp: {text!r}")
    year, month, day, hour, minute = (int(x) for x in m.groups()[:5])
    second = int(m.group(6) or 0)
    fraction = (m.group(7) or "").ljust(6, "0")[:6]
    value = datetime(
        year, month, day, hour, minute, second, int(fraction), tzinfo=timezone.utc
    )
    offset = m.group(8)
    if offset and offset != "Z":
        sign = -1 if offset[0] == "-" else 1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
        try:
            value = value - sign * delta
        except OverflowError as exc:
            raise ValueError(f"timestamp out of range: {text!r}") from exc
    return value


def _format_double(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return repr(float(value))


def _parse_integer(raw: Any, low: int, high: int) -> int:
    if isinstance(raw, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError(f"{raw!r} is not integral")
        value = int(raw)
    elif isinstance(raw, str) and _INTEGER_RE.match(raw.strip()):
        value = int(raw.strip())
    else:
        raise ValueError(f"{raw!r} is not an integer")
    if not low <= value <= high:
        raise ValueError(f"{value} out of range")
    return value


def _parse_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
    raise ValueError(f"{raw!r} is not a boolean")


def _parse_double(raw: Any) -> float:
    if isinstance(raw, bool):
        raise ValueError("boolean is not a double")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if text in _DOUBLE_SPECIALS:
            return _DOUBLE_SPECIALS[text]
        return float(text)
    raise ValueError(f"{raw!r} is not a double")


def _raw_to_text(raw: Any) -> str:
    """JSON literals that end up as String keep their JSON spelling."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, float):
        return _format_double(raw)
    return str(raw)


def parse_wire_value(raw: Any, edm_type: EdmType) -> Any:
    """
    Turn a wire value into the Python value for ``edm_type``.

    ``raw`` is normally a string, but JSON literals (numbers, booleans)
    are accepted for the types that may be sent that way.

    Raises:
        ValueError, TypeError, binascii.Error: on malformed input
    """
    if edm_type is EdmType.STRING:
        return _raw_to_text(raw)
    if edm_type is EdmType.INT32:
        return _parse_integer(raw, INT32_MIN, INT32_MAX)
    if edm_type is EdmType.INT64:
        return _parse_integer(raw, INT64_MIN, INT64_MAX)
    if edm_type is EdmType.DOUBLE:
        return _parse_double(raw)
    if edm_type is EdmType.BOOLEAN:
        return _parse_boolean(raw)
    if not isinstance(raw, str):
        raise TypeError(f"{edm_type.value} must be sent as a string, got {raw!r}")
    if edm_type is EdmType.DATETIME:
        return parse_datetime(raw)
    if edm_type is EdmType.GUID:
        return uuid.UUID(raw)
    if edm_type is EdmType.BINARY:
        return base64.b64decode(raw, validate=True)
    raise ValueError(f"unsupported type {edm_type}")


def format_wire_value(value: Any, edm_type: EdmType) -> str:
    if edm_type is EdmType.STRING:
        return value
    if edm_type in (EdmType.INT32, EdmType.INT64):
        return str(value)
    if edm_type is EdmType.DOUBLE:
        return _format_double(value)
    if edm_type is EdmType.BOOLEAN:
        return "true" if value else "false"
    if edm_type is EdmType.DATETIME:
        return format_datetime(value)
    if edm_type is EdmType.GUID:
        return str(value)
    if edm_type is EdmType.BINARY:
        return base64.b64encode(bytes(value)).decode("ascii")
    raise ValueError(f"unsupported type {edm_type}")


class EntityProperty:
    """
    A typed property value: exactly one of String, Binary, Boolean,
    DateTime, Double, Guid, Int32, Int64, or Null.

    A Null property keeps the type it was declared with, ``value`` is None.
    Equality is per variant: bytes compare byte-wise, datetimes after UTC
    normalization, NaN equals NaN.
    """

    __slots__ = ("edm_type", "value")

    def __init__(self, edm_type: EdmType, value: Any = None) -> None:
        if value is not None:
            value = _check_variant(edm_type, value)
        self.edm_type = edm_type
        self.value = value

    @classmethod
    def string(cls, value: Optional[str]) -> "EntityProperty":
        return cls(EdmType.STRING, value)

    @classmethod
    def binary(cls, value: Optional[bytes]) -> "EntityProperty":
        return cls(EdmType.BINARY, value)

    @classmethod
    def boolean(cls, value: Optional[bool]) -> "EntityProperty":
        return cls(EdmType.BOOLEAN, value)

    @classmethod
    def datetime(cls, value: Optional[datetime]) -> "EntityProperty":
        return cls(EdmType.DATETIME, value)

    @classmethod
    def double(cls, value: Optional[float]) -> "EntityProperty":
        return cls(EdmType.DOUBLE, value)

    @classmethod
    def guid(cls, value: Union[uuid.UUID, str, None]) -> "EntityProperty":
        return cls(EdmType.GUID, value)

    @classmethod
    def int32(cls, value: Optional[int]) -> "EntityProperty":
        return cls(EdmType.INT32, value)

    @classmethod
    def int64(cls, value: Optional[int]) -> "EntityProperty":
        return cls(EdmType.INT64, value)

    @classmethod
    def null(cls, edm_type: EdmType = EdmType.STRING) -> "EntityProperty":
        return cls(edm_type, None)

    @classmethod
    def from_value(cls, value: Any) -> "EntityProperty":
        """
        Infer the variant from a Python value.  Integers inside the Int32
        range become Int32, larger ones Int64.
        """
        if isinstance(value, EntityProperty):
            return value
        if value is None:
            return cls.null()
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, int):
            if INT32_MIN <= value <= INT32_MAX:
                return cls.int32(value)
            return cls.int64(value)
        if isinstance(value, float):
            return cls.double(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls.binary(bytes(value))
        if isinstance(value, uuid.UUID):
            return cls.guid(value)
        if isinstance(value, datetime):
            return cls.datetime(value)
        if isinstance(value, str):
            return cls.string(value)
        raise TypeError(f"no EDM type for {type(value).__name__}")

    @property
    def is_null(self) -> bool:
        return self.value is None

    def _key(self) -> Any:
        if self.value is None:
            return None
        if self.edm_type is EdmType.DATETIME:
            return _as_utc(self.value)
        if self.edm_type is EdmType.DOUBLE and math.isnan(self.value):
            return "NaN"
        return self.value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityProperty):
            return NotImplemented
        return self.edm_type is other.edm_type and self._key() == other._key()

    def __hash__(self) -> int:
        return hash((self.edm_type, self._key()))

    def __repr__(self) -> str:
        return "EntityProperty(%s, %r)" % (self.edm_type.value, self.value)


def _check_variant(edm_type: EdmType, value: Any) -> Any:
    if edm_type is EdmType.STRING:
        if not isinstance(value, str):
            raise TypeError("String property needs a str")
    elif edm_type is EdmType.BINARY:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError("Binary property needs bytes")
        value = bytes(value)
    elif edm_type is EdmType.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeError("Boolean property needs a bool")
    elif edm_type is EdmType.DATETIME:
        if not isinstance(value, datetime):
            raise TypeError("DateTime property needs a datetime")
    elif edm_type is EdmType.DOUBLE:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("Double property needs a float")
        value = float(value)
    elif edm_type is EdmType.GUID:
        if isinstance(value, str):
            value = uuid.UUID(value)
        elif not isinstance(value, uuid.UUID):
            raise TypeError("Guid property needs a UUID")
    elif edm_type in (EdmType.INT32, EdmType.INT64):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{edm_type.value} property needs an int")
        low, high = (
            (INT32_MIN, INT32_MAX) if edm_type is EdmType.INT32 else (INT64_MIN, INT64_MAX)
        )
        if not low <= value <= high:
            raise ValueError(f"{value} does not fit in {edm_type.value}")
    return value


class Entity:
    """
    A table row.

    ``partition_key`` and ``row_key`` are always strings and are never part
    of ``properties``; the empty string is a valid key and round-trips
    as such.  ``etag`` is opaque and only ever copied, never interpreted,
    except for deriving an approximate Timestamp after an insert.
    """

    def __init__(
        self,
        partition_key: str = "",
        row_key: str = "",
        properties: Optional[Mapping[str, Any]] = None,
        etag: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        if not isinstance(partition_key, str) or not isinstance(row_key, str):
            raise TypeError("PartitionKey and RowKey must be strings")
        self.partition_key = partition_key
        self.row_key = row_key
        self.etag = etag
        self.timestamp = timestamp
        self.properties: Dict[str, EntityProperty] = {}
        for name, value in (properties or {}).items():
            self[name] = value

    def __setitem__(self, name: str, value: Any) -> None:
        if name in RESERVED_NAMES:
            raise KeyError(f"{name} is a reserved property name")
        self.properties[name] = EntityProperty.from_value(value)

    def __getitem__(self, name: str) -> EntityProperty:
        return self.properties[name]

    def __delitem__(self, name: str) -> None:
        del self.properties[name]

    def __contains__(self, name: object) -> bool:
        return name in self.properties

    def __iter__(self) -> Iterator[str]:
        return iter(self.properties)

    def __len__(self) -> int:
        return len(self.properties)

    def values(self) -> Dict[str, Any]:
        """Plain Python values of all properties."""
        return {name: prop.value for name, prop in self.properties.items()}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return (
            self.partition_key == other.partition_key
            and self.row_key == other.row_key
            and self.properties == other.properties
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "Entity(%r, %r, %r)" % (self.partition_key, self.row_key, self.properties)


class EntityShape(dict):
    """
    Field name -> EdmType table for a statically known entity type.

    Build one by hand as a schema object, or let :func:`shape_for`
    derive it from a dataclass / annotated class.
    """

    def resolve(self, name: str) -> EdmType:
        return self.get(name, EdmType.STRING)


_PYTHON_TO_EDM = (
    (bytes, EdmType.BINARY),
    (bytearray, EdmType.BINARY),
    (bool, EdmType.BOOLEAN),
    (datetime, EdmType.DATETIME),
    (float, EdmType.DOUBLE),
    (uuid.UUID, EdmType.GUID),
    (int, EdmType.INT32),
)


def _edm_for_hint(hint: Any) -> EdmType:
    if hint is Int64:
        return EdmType.INT64
    if typing.get_origin(hint) is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return _edm_for_hint(args[0])
    for python_type, edm_type in _PYTHON_TO_EDM:
        if hint is python_type:
            return edm_type
    return EdmType.STRING


def shape_for(cls: type) -> EntityShape:
    """
    Derive an :class:`EntityShape` from the type annotations of ``cls``.

    ``int`` maps to Int32, :data:`Int64` to Int64, ``Optional[X]`` to the
    type of X and anything unrecognized to String.  A class attribute
    ``__edm_types__`` (name -> EdmType) overrides single fields.
    """
    hints = typing.get_type_hints(cls)
    shape = EntityShape(
        (name, _edm_for_hint(hint))
        for name, hint in hints.items()
        if not name.startswith("_") and name not in RESERVED_NAMES
    )
    shape.update(getattr(cls, "__edm_types__", {}))
    return shape


class ShapeCache:
    """
    Memoizes :func:`shape_for` per class.  Shapes are read-only once
    built, so concurrent decoders may share one cache.
    """

    def __init__(self) -> None:
        self._shapes: Dict[type, EntityShape] = {}
        self._lock = threading.Lock()

    def get(self, cls: type) -> EntityShape:
        shape = self._shapes.get(cls)
        if shape is None:
            with self._lock:
                shape = self._shapes.get(cls)
                if shape is None:
                    shape = shape_for(cls)
                    self._shapes[cls] = shape
        return shape

    def __len__(self) -> int:
        return len(self._shapes)


default_shape_cache = ShapeCache()


def _parse_or_raise(raw: Any, edm_type: EdmType, property_name: Optional[str]) -> EntityProperty:
    try:
        return EntityProperty(edm_type, parse_wire_value(raw, edm_type))
    except (ValueError, TypeError, OverflowError, binascii.Error) as exc:
        raise error.MalformedWireValue(
            reason="Failed to parse property '%s' with value '%s' as type '%s'"
            % (property_name, raw, edm_type.value)
        ) from exc


def decode_property(
    raw_value: Any,
    explicit_type: Optional[EdmType] = None,
    resolver: Optional[TypeResolver] = None,
    partition_key: Optional[str] = None,
    row_key: Optional[str] = None,
    property_name: Optional[str] = None,
    shape: Optional[Mapping[str, EdmType]] = None,
) -> EntityProperty:
    """
    Materialize one property from its wire value.

    Args:
        raw_value: The wire value; a string, or a JSON literal / None
        explicit_type: Type annotation found on the wire, if any
        resolver: Called as resolver(partition_key, row_key, property_name,
            raw_value) when there is no annotation
        partition_key, row_key, property_name: Context for the resolver
        shape: Declared field types of the target entity type

    Returns:
        The decoded EntityProperty.  Without annotation, resolver or shape
        the value is kept as a String.

    Raises:
        MalformedWireValue: the value does not parse as its type
        ResolverFailure: the resolver raised
    """
    if property_name == TIMESTAMP and explicit_type is None:
        explicit_type = EdmType.DATETIME

    edm_type = explicit_type
    if edm_type is None and resolver is not None:
        try:
            resolved = resolver(partition_key, row_key, property_name, raw_value)
            if resolved is not None and not isinstance(resolved, EdmType):
                resolved = EdmType.from_wire(resolved)
        except Exception as exc:
            raise error.ResolverFailure(
                reason="The custom property resolver threw an exception for property '%s'"
                % property_name
            ) from exc
        log.debug("resolver typed property %s as %s", property_name, resolved)
        edm_type = resolved
    if edm_type is None and shape is not None:
        edm_type = shape.get(property_name, EdmType.STRING)
    if edm_type is None:
        log.debug("no type information for property %s, keeping it as String", property_name)
        edm_type = EdmType.STRING

    if raw_value is None:
        return EntityProperty.null(edm_type)
    return _parse_or_raise(raw_value, edm_type, property_name)


def encode_property(prop: EntityProperty) -> Tuple[Optional[str], Optional[EdmType]]:
    """
    Wire form of a property: the string value and the explicit type tag.

    String, Boolean, Int32 and finite Double values are inferred by the
    receiver and get no tag.  Binary, Guid, DateTime and Int64 always
    carry one, as do NaN and the infinities.  A Null property is
    ``(None, tag)``, tagged unless it is a String.
    """
    edm_type = prop.edm_type
    if prop.value is None:
        return None, None if edm_type is EdmType.STRING else edm_type
    tagged = edm_type in (EdmType.BINARY, EdmType.GUID, EdmType.DATETIME, EdmType.INT64)
    if edm_type is EdmType.DOUBLE and not math.isfinite(prop.value):
        tagged = True
    return format_wire_value(prop.value, edm_type), edm_type if tagged else None


def etag_from_timestamp(timestamp: str) -> str:
    """
    The weak ETag the service would send for ``timestamp``:
    ``W/"datetime'<url-escaped timestamp>'"``.
    """
    return "W/\"datetime'%s'\"" % quote(timestamp, safe="")


def timestamp_from_etag(etag: str) -> datetime:
    """
    Approximate server timestamp embedded in an entity ETag.

    The grammar is ``[W/]"datetime'<url-escaped ISO timestamp>'"``.

    Raises:
        MalformedWireValue: if the ETag does not follow that grammar
    """
    text = etag[2:] if etag.startswith("W/") else etag
    prefix = "\"datetime'"
    if not (text.startswith(prefix) and text.endswith("'\"")):
        raise error.MalformedWireValue(reason=f"ETag {etag!r} carries no timestamp")
    try:
        return parse_datetime(unquote(text[len(prefix) : -2]))
    except ValueError as exc:
        raise error.MalformedWireValue(reason=f"ETag {etag!r} carries no timestamp") from exc
