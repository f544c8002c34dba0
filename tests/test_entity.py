"""
Unit tests for the entity property model.

These tests are pure: wire strings in, typed properties out, and back.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from storagewire.lib import error
from storagewire.protocol.entity import (
    INT32_MAX,
    INT32_MIN,
    INT64_MAX,
    INT64_MIN,
    Entity,
    EntityProperty,
    EntityShape,
    Int64,
    ShapeCache,
    decode_property,
    encode_property,
    etag_from_timestamp,
    format_datetime,
    parse_datetime,
    shape_for,
    timestamp_from_etag,
)
from storagewire.protocol.json_codec import EntityDecoder, serialize_entity
from storagewire.protocol.types import EdmType


def roundtrip(prop: EntityProperty) -> EntityProperty:
    body = serialize_entity(Entity("p", "r", {"Field": prop}))
    return EntityDecoder().decode_entity_bytes(body)["Field"]


class TestRoundTrip:
    """Every EDM type survives a JSON write and read, boundary values included."""

    @pytest.mark.parametrize(
        "prop",
        [
            EntityProperty.string(""),
            EntityProperty.string("æøå ☃ 'quoted'"),
            EntityProperty.binary(b""),
            EntityProperty.binary(bytes(range(256))),
            EntityProperty.boolean(True),
            EntityProperty.boolean(False),
            EntityProperty.datetime(datetime(1601, 1, 1, tzinfo=timezone.utc)),
            EntityProperty.datetime(datetime(9999, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)),
            EntityProperty.double(0.0),
            EntityProperty.double(-1.5e-300),
            EntityProperty.double(1.7976931348623157e308),
            EntityProperty.double(math.inf),
            EntityProperty.double(-math.inf),
            EntityProperty.double(math.nan),
            EntityProperty.guid(uuid.UUID("c9da6455-213d-42c9-9a79-3e9149a57833")),
            EntityProperty.int32(INT32_MIN),
            EntityProperty.int32(INT32_MAX),
            EntityProperty.int64(INT64_MIN),
            EntityProperty.int64(INT64_MAX),
        ],
        ids=repr,
    )
    def test_roundtrip(self, prop):
        """The entity read back carries the same typed property"""
        assert roundtrip(prop) == prop

    @pytest.mark.parametrize("edm_type", list(EdmType))
    def test_null_keeps_declared_type(self, edm_type):
        """A Null property keeps its type through the wire"""
        prop = EntityProperty.null(edm_type)
        back = roundtrip(prop)
        assert back.is_null
        assert back.edm_type is edm_type


class TestEncodeProperty:
    """Which properties carry an explicit type tag."""

    def test_untagged_types(self):
        """String, Boolean, Int32 and finite Double are inferred by the receiver"""
        assert encode_property(EntityProperty.string("x")) == ("x", None)
        assert encode_property(EntityProperty.boolean(True)) == ("true", None)
        assert encode_property(EntityProperty.int32(42)) == ("42", None)
        assert encode_property(EntityProperty.double(1.5)) == ("1.5", None)

    def test_tagged_types(self):
        """Binary, Guid, DateTime and Int64 always carry a tag"""
        assert encode_property(EntityProperty.binary(b"\x00\x01")) == ("AAE=", EdmType.BINARY)
        assert encode_property(EntityProperty.int64(1)) == ("1", EdmType.INT64)
        text, tag = encode_property(
            EntityProperty.guid("C9DA6455-213D-42C9-9A79-3E9149A57833")
        )
        assert text == "c9da6455-213d-42c9-9a79-3e9149a57833"
        assert tag is EdmType.GUID
        assert encode_property(
            EntityProperty.datetime(datetime(2020, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc))
        ) == ("2020-01-02T03:04:05.1234560Z", EdmType.DATETIME)

    def test_special_doubles(self):
        """NaN and the infinities use the OData spellings and carry a tag"""
        assert encode_property(EntityProperty.double(math.nan)) == ("NaN", EdmType.DOUBLE)
        assert encode_property(EntityProperty.double(math.inf)) == ("Infinity", EdmType.DOUBLE)
        assert encode_property(EntityProperty.double(-math.inf)) == ("-Infinity", EdmType.DOUBLE)

    def test_null(self):
        """Null gives no text, and a tag for every type but String"""
        assert encode_property(EntityProperty.null(EdmType.STRING)) == (None, None)
        assert encode_property(EntityProperty.null(EdmType.INT64)) == (None, EdmType.INT64)
        assert encode_property(EntityProperty.null(EdmType.INT32)) == (None, EdmType.INT32)
        assert encode_property(EntityProperty.null(EdmType.BOOLEAN)) == (None, EdmType.BOOLEAN)


class TestDecodeProperty:
    """The four step type resolution chain."""

    def test_explicit_type_wins(self):
        """An explicit annotation is used even when a resolver is present"""
        resolver_calls = []

        def resolver(pk, rk, name, value):
            resolver_calls.append(name)
            return EdmType.STRING

        prop = decode_property("123", EdmType.INT64, resolver, "p", "r", "Count")
        assert prop == EntityProperty.int64(123)
        assert resolver_calls == []

    def test_int64_string_parsed_exactly(self):
        """A quoted Int64 does not go through float"""
        prop = decode_property("9223372036854775807", EdmType.INT64, property_name="Big")
        assert prop.value == INT64_MAX

    def test_json_number_coerced(self):
        """JSON numbers are accepted for numeric types"""
        assert decode_property(3, EdmType.DOUBLE).value == 3.0
        assert decode_property(7.0, EdmType.INT32).value == 7

    def test_special_double_spellings(self):
        """Both OData and XML schema spellings parse"""
        assert decode_property("INF", EdmType.DOUBLE).value == math.inf
        assert decode_property("-Infinity", EdmType.DOUBLE).value == -math.inf
        assert math.isnan(decode_property("NaN", EdmType.DOUBLE).value)

    def test_resolver_used(self):
        """Without annotation the resolver picks the type"""

        def resolver(pk, rk, name, value):
            assert (pk, rk, name, value) == ("p", "r", "Created", "2021-05-06T07:08:09Z")
            return EdmType.DATETIME

        prop = decode_property("2021-05-06T07:08:09Z", None, resolver, "p", "r", "Created")
        assert prop.value == datetime(2021, 5, 6, 7, 8, 9, tzinfo=timezone.utc)

    def test_resolver_may_return_wire_name(self):
        """A resolver returning "Edm.Int64" is understood"""
        prop = decode_property("5", None, lambda *args: "Edm.Int64", property_name="N")
        assert prop == EntityProperty.int64(5)

    def test_resolver_none_falls_through_to_shape(self):
        """A resolver answering None lets the shape decide"""
        shape = EntityShape(Count=EdmType.INT32)
        prop = decode_property("12", None, lambda *args: None, property_name="Count", shape=shape)
        assert prop == EntityProperty.int32(12)

    def test_resolver_failure(self):
        """Any resolver exception surfaces as ResolverFailure with the cause chained"""

        def resolver(pk, rk, name, value):
            raise KeyError(name)

        with pytest.raises(error.ResolverFailure) as excinfo:
            decode_property("1", None, resolver, "p", "r", "Bad")
        assert isinstance(excinfo.value.__cause__, KeyError)
        assert "Bad" in excinfo.value.reason

    def test_malformed_value(self):
        """A value that does not parse as its type raises MalformedWireValue"""
        with pytest.raises(error.MalformedWireValue) as excinfo:
            decode_property("not-a-number", EdmType.INT32, property_name="Age")
        assert "Age" in excinfo.value.reason
        assert "Edm.Int32" in excinfo.value.reason

    @pytest.mark.parametrize(
        "raw, edm_type",
        [
            ("2147483648", EdmType.INT32),
            ("-9223372036854775809", EdmType.INT64),
            ("maybe", EdmType.BOOLEAN),
            ("not-a-guid", EdmType.GUID),
            ("***", EdmType.BINARY),
            ("yesterday", EdmType.DATETIME),
            ("0001-01-01T00:00:00+01:00", EdmType.DATETIME),
            ("9999-12-31T23:59:59-01:00", EdmType.DATETIME),
            (5, EdmType.DATETIME),
            (1.5, EdmType.INT64),
        ],
    )
    def test_malformed_boundaries(self, raw, edm_type):
        """Out of range and garbage values are rejected"""
        with pytest.raises(error.MalformedWireValue):
            decode_property(raw, edm_type, property_name="Field")

    def test_no_metadata_int64_falls_back_to_string(self):
        """Without annotation, resolver or shape an Int64 value stays a String"""
        prop = decode_property("9223372036854775807", None, property_name="Big")
        assert prop == EntityProperty.string("9223372036854775807")

    def test_timestamp_always_datetime(self):
        """Timestamp is recognized by name"""
        prop = decode_property("2020-01-01T00:00:00Z", None, property_name="Timestamp")
        assert prop.edm_type is EdmType.DATETIME


class TestDateTime:
    """Timestamp formatting and parsing."""

    def test_seven_digits(self):
        """Formatting always writes seven fractional digits and Z"""
        assert format_datetime(datetime(2020, 1, 1)) == "2020-01-01T00:00:00.0000000Z"

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("2020-01-01T00:00:00Z", datetime(2020, 1, 1, tzinfo=timezone.utc)),
            ("2020-01-01T00:00:00.5Z", datetime(2020, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc)),
            ("2020-01-01T00:00:00.1234567Z", datetime(2020, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)),
            ("2020-01-01T02:00:00+02:00", datetime(2020, 1, 1, tzinfo=timezone.utc)),
            ("2020-01-01T00:00", datetime(2020, 1, 1, tzinfo=timezone.utc)),
        ],
    )
    def test_parse(self, text, expected):
        """Parsing accepts 0 to 7 fractional digits and offsets"""
        assert parse_datetime(text) == expected

    def test_offset_out_of_range(self):
        """An offset that moves the value past the datetime range is a ValueError"""
        with pytest.raises(ValueError):
            parse_datetime("0001-01-01T00:00:00+01:00")

    def test_not_a_string(self):
        with pytest.raises(TypeError):
            parse_datetime(20200101)

    def test_equality_is_utc_normalized(self):
        """DateTime properties compare after UTC normalization"""
        cet = timezone(timedelta(hours=1))
        assert EntityProperty.datetime(datetime(2020, 1, 1, 1, tzinfo=cet)) == EntityProperty.datetime(
            datetime(2020, 1, 1)
        )


class TestEntityProperty:
    """Variant construction and inference."""

    def test_from_value(self):
        """Python values map to the expected variants"""
        assert EntityProperty.from_value(True).edm_type is EdmType.BOOLEAN
        assert EntityProperty.from_value(INT32_MAX).edm_type is EdmType.INT32
        assert EntityProperty.from_value(INT32_MAX + 1).edm_type is EdmType.INT64
        assert EntityProperty.from_value(1.0).edm_type is EdmType.DOUBLE
        assert EntityProperty.from_value(b"x").edm_type is EdmType.BINARY
        assert EntityProperty.from_value(uuid.uuid4()).edm_type is EdmType.GUID
        assert EntityProperty.from_value(datetime.now()).edm_type is EdmType.DATETIME
        assert EntityProperty.from_value("x").edm_type is EdmType.STRING
        assert EntityProperty.from_value(None).is_null

    def test_range_checks(self):
        """Int32 and Int64 refuse values outside their range"""
        with pytest.raises(ValueError):
            EntityProperty.int32(INT32_MAX + 1)
        with pytest.raises(ValueError):
            EntityProperty.int64(INT64_MIN - 1)

    def test_variant_type_checks(self):
        """Payloads of the wrong Python type are refused"""
        with pytest.raises(TypeError):
            EntityProperty.boolean(1)
        with pytest.raises(TypeError):
            EntityProperty.int32(True)
        with pytest.raises(TypeError):
            EntityProperty.from_value(object())

    def test_variants_differ(self):
        """Same value, different variant, not equal"""
        assert EntityProperty.int32(1) != EntityProperty.int64(1)
        assert EntityProperty.null(EdmType.STRING) != EntityProperty.null(EdmType.INT32)


class TestEntity:
    """The entity container."""

    def test_reserved_names(self):
        """PartitionKey, RowKey and Timestamp can not be properties"""
        entity = Entity("p", "r")
        for name in ("PartitionKey", "RowKey", "Timestamp"):
            with pytest.raises(KeyError):
                entity[name] = "x"

    def test_empty_keys(self):
        """The empty string is a valid key"""
        entity = Entity("", "")
        assert entity.partition_key == ""
        assert entity.row_key == ""

    def test_keys_must_be_strings(self):
        """Non-string keys are refused"""
        with pytest.raises(TypeError):
            Entity(1, "r")

    def test_values(self):
        """values() gives the plain Python values"""
        entity = Entity("p", "r", {"Name": "x", "Age": 3})
        assert entity.values() == {"Name": "x", "Age": 3}
        assert "Age" in entity
        assert len(entity) == 2


@dataclass
class Customer:
    name: str
    age: int
    balance: float
    visits: Int64
    avatar: Optional[bytes] = None
    joined: Optional[datetime] = None
    id: Optional[uuid.UUID] = None
    active: bool = True


class TestShape:
    """Shapes derived from annotated classes."""

    def test_shape_for(self):
        """Annotations map to EDM types"""
        shape = shape_for(Customer)
        assert shape == {
            "name": EdmType.STRING,
            "age": EdmType.INT32,
            "balance": EdmType.DOUBLE,
            "visits": EdmType.INT64,
            "avatar": EdmType.BINARY,
            "joined": EdmType.DATETIME,
            "id": EdmType.GUID,
            "active": EdmType.BOOLEAN,
        }

    def test_override(self):
        """__edm_types__ overrides single fields"""

        class Tagged:
            code: str
            __edm_types__ = {"code": EdmType.GUID}

        assert shape_for(Tagged) == {"code": EdmType.GUID}

    def test_cache(self):
        """The cache builds one shape per class and returns it again"""
        cache = ShapeCache()
        first = cache.get(Customer)
        assert cache.get(Customer) is first
        assert len(cache) == 1

    def test_shape_resolves_unannotated(self):
        """A shape types a value that arrived without annotation"""
        prop = decode_property("42", None, property_name="visits", shape=shape_for(Customer))
        assert prop == EntityProperty.int64(42)
        prop = decode_property("42", None, property_name="unknown", shape=shape_for(Customer))
        assert prop == EntityProperty.string("42")


class TestETag:
    """The ETag timestamp grammar."""

    def test_roundtrip(self):
        """A derived ETag gives the timestamp back"""
        etag = etag_from_timestamp("2020-01-01T00:00:00.1234567Z")
        assert etag == "W/\"datetime'2020-01-01T00%3A00%3A00.1234567Z'\""
        assert timestamp_from_etag(etag) == datetime(2020, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)

    def test_strong_etag(self):
        """The W/ prefix is optional"""
        assert timestamp_from_etag("\"datetime'2020-01-01T00%3A00%3A00Z'\"").year == 2020

    @pytest.mark.parametrize("etag", ["*", "\"0x8D1\"", "W/\"datetime'garbage'\""])
    def test_malformed(self, etag):
        """ETags without a timestamp raise MalformedWireValue"""
        with pytest.raises(error.MalformedWireValue):
            timestamp_from_etag(etag)
