"""
JSON (OData "light") entity payloads.

Three verbosity levels exist, selected by the ``odata=`` parameter of the
content type:

* full and minimal metadata: values the JSON literal can not express
  (Int64, DateTime, Guid, Binary, non-finite Double) carry a
  ``Name@odata.type`` annotation, the rest is typed by its literal;
* no metadata: there are no annotations at all, so the type of a value
  has to come from a resolver or a known entity shape, or it is kept as
  a String.
"""

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Union

from lxml import etree

from storagewire.lib import error

from .entity import (
    INT32_MAX,
    INT32_MIN,
    PARTITION_KEY,
    ROW_KEY,
    TIMESTAMP,
    Entity,
    EntityProperty,
    EntityShape,
    ShapeCache,
    TypeResolver,
    decode_property,
    default_shape_cache,
    encode_property,
    etag_from_timestamp,
    parse_datetime,
    shape_for,
)
from .types import EdmType, ExtendedErrorInfo, PayloadFormat

log = logging.getLogger(__name__)

ODATA_TYPE_SUFFIX = "@odata.type"
ODATA_ETAG = "odata.etag"

_BATCH_INDEX_RE = re.compile(r"^(\d+):")


def _json_literal(prop: EntityProperty, text: Optional[str]) -> Any:
    if prop.value is None:
        return None
    if prop.edm_type is EdmType.BOOLEAN:
        return prop.value
    if prop.edm_type is EdmType.INT32:
        return prop.value
    if prop.edm_type is EdmType.DOUBLE and text not in ("NaN", "Infinity", "-Infinity"):
        return prop.value
    return text


def entity_to_json(entity: Entity, include_keys: bool = True) -> Dict[str, Any]:
    """
    JSON object for an entity write.

    Args:
        entity: The entity to serialize
        include_keys: Write PartitionKey/RowKey into the body (inserts and
            batch parts do; updates address the entity by URL)
    """
    obj: Dict[str, Any] = {}
    if include_keys:
        obj[PARTITION_KEY] = entity.partition_key
        obj[ROW_KEY] = entity.row_key
    for name, prop in entity.properties.items():
        text, tag = encode_property(prop)
        obj[name] = _json_literal(prop, text)
        if tag is not None:
            obj[name + ODATA_TYPE_SUFFIX] = tag.value
    return obj


def serialize_entity(entity: Entity, include_keys: bool = True) -> bytes:
    """UTF-8 encoded JSON body for ``entity``."""
    return json.dumps(entity_to_json(entity, include_keys), ensure_ascii=False).encode("utf-8")


def _literal_type(value: Any) -> Optional[EdmType]:
    if isinstance(value, bool):
        return EdmType.BOOLEAN
    if isinstance(value, int):
        return EdmType.INT32 if INT32_MIN <= value <= INT32_MAX else EdmType.INT64
    if isinstance(value, float):
        return EdmType.DOUBLE
    if isinstance(value, str):
        return EdmType.STRING
    return None


def _is_metadata_key(name: str) -> bool:
    return name.startswith("odata.") or "@odata." in name


class EntityDecoder:
    """
    Materializes entities from JSON objects.

    Args:
        resolver: Type resolver used for unannotated (no metadata) values
        shape: Known shape of the entities, as an :class:`EntityShape` or a
            class to derive one from
        use_shape_cache: Look shapes derived from classes up in
            ``shape_cache`` instead of rebuilding them per decoder
        shape_cache: Cache to use, the process wide default if None
    """

    def __init__(
        self,
        resolver: Optional[TypeResolver] = None,
        shape: Union[EntityShape, Mapping[str, EdmType], type, None] = None,
        use_shape_cache: bool = True,
        shape_cache: Optional[ShapeCache] = None,
    ) -> None:
        self.resolver = resolver
        self.use_shape_cache = use_shape_cache
        self.shape_cache = shape_cache if shape_cache is not None else default_shape_cache
        if isinstance(shape, type):
            if use_shape_cache:
                shape = self.shape_cache.get(shape)
            else:
                log.debug("shape cache disabled, deriving shape of %s", shape.__name__)
                shape = shape_for(shape)
        self.shape = shape

    def decode_entity(
        self,
        obj: Mapping[str, Any],
        payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA,
        etag: Optional[str] = None,
    ) -> Entity:
        """
        Build an :class:`Entity` from one JSON object.

        Args:
            obj: Parsed JSON object of the entity
            payload_format: Which metadata variant the object came in
            etag: ETag from the response headers; ``odata.etag`` in the
                object wins over it.  When neither exists but a Timestamp
                does, the ETag is derived from the Timestamp.

        Raises:
            MalformedWireValue: broken keys, annotations or values
            ResolverFailure: the resolver raised
        """
        if not isinstance(obj, Mapping):
            raise error.MalformedWireValue(reason="entity payload is not a JSON object")

        pk = obj.get(PARTITION_KEY)
        rk = obj.get(ROW_KEY)
        if (pk is not None and not isinstance(pk, str)) or (
            rk is not None and not isinstance(rk, str)
        ):
            raise error.MalformedWireValue(reason="PartitionKey and RowKey must be strings")
        entity = Entity(pk or "", rk or "")
        entity.etag = obj.get(ODATA_ETAG) or etag

        raw_timestamp = obj.get(TIMESTAMP)
        if raw_timestamp is not None:
            try:
                entity.timestamp = parse_datetime(raw_timestamp)
            except (TypeError, ValueError) as exc:
                raise error.MalformedWireValue(
                    reason=f"Timestamp {raw_timestamp!r} is not a valid DateTime"
                ) from exc
            if entity.etag is None:
                entity.etag = etag_from_timestamp(raw_timestamp)

        annotated = payload_format is not PayloadFormat.NO_METADATA
        for name, raw in obj.items():
            if name in (PARTITION_KEY, ROW_KEY, TIMESTAMP) or _is_metadata_key(name):
                continue
            explicit = None
            tag = obj.get(name + ODATA_TYPE_SUFFIX)
            if tag is not None:
                try:
                    explicit = EdmType.from_wire(tag)
                except ValueError as exc:
                    raise error.MalformedWireValue(
                        reason=f"unknown type annotation {tag!r} on property {name}"
                    ) from exc
            elif annotated:
                explicit = _literal_type(raw)
            entity.properties[name] = decode_property(
                raw,
                explicit,
                None if annotated else self.resolver,
                entity.partition_key,
                entity.row_key,
                name,
                None if annotated else self.shape,
            )
        return entity

    def decode_entity_bytes(
        self,
        body: bytes,
        payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA,
        etag: Optional[str] = None,
    ) -> Entity:
        return self.decode_entity(load_json(body), payload_format, etag)


def load_json(body: Union[bytes, str]) -> Any:
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise error.MalformedWireValue(reason=f"invalid JSON payload: {exc}") from exc


def decode_query_response(
    body: Union[bytes, str],
    payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA,
    decoder: Optional[EntityDecoder] = None,
) -> List[Entity]:
    """
    Entities of a query response body, ``{"value": [...]}``.

    Raises:
        MalformedWireValue: the body is not such a document
    """
    decoder = decoder or EntityDecoder()
    document = load_json(body)
    if not isinstance(document, dict) or not isinstance(document.get("value"), list):
        raise error.MalformedWireValue(reason="query response has no 'value' array")
    return [decoder.decode_entity(item, payload_format) for item in document["value"]]


def _error_from_json(document: Any) -> Optional[ExtendedErrorInfo]:
    if not isinstance(document, dict):
        return None
    err = document.get("odata.error") or document.get("error")
    if not isinstance(err, dict):
        return None
    message = err.get("message")
    if isinstance(message, dict):
        message = message.get("value")
    info = ExtendedErrorInfo(code=err.get("code"), message=message)
    inner = err.get("innererror")
    if isinstance(inner, dict):
        for key in ("message", "type", "stacktrace"):
            if inner.get(key) is not None:
                info.details["innererror." + key] = str(inner[key])
    return info


def _error_from_xml(body: bytes) -> Optional[ExtendedErrorInfo]:
    try:
        root = etree.fromstring(body, parser=etree.XMLParser(resolve_entities=False))
    except etree.XMLSyntaxError:
        return None
    if etree.QName(root).localname != "Error":
        return None
    info = ExtendedErrorInfo()
    for child in root:
        if not isinstance(child.tag, str):
            continue
        name = etree.QName(child).localname
        if name == "Code":
            info.code = child.text
        elif name == "Message":
            info.message = child.text
        else:
            info.details[name] = child.text or ""
    return info


def parse_error_payload(body: Union[bytes, str, None]) -> Optional[ExtendedErrorInfo]:
    """
    Extended error information from an error response body.

    Understands the OData JSON error document and the XML ``<Error>``
    document.  Anything else (including an empty body) gives None; a
    missing error payload is not an error in itself.
    """
    if not body:
        return None
    if isinstance(body, str):
        body = body.encode("utf-8")
    text = body.lstrip()
    if text[:1] in (b"{", b"["):
        try:
            return _error_from_json(json.loads(text))
        except (ValueError, UnicodeDecodeError):
            log.debug("error payload is not valid JSON", exc_info=True)
            return None
    if text[:1] == b"<":
        return _error_from_xml(text)
    return None


def failed_index(info: Optional[ExtendedErrorInfo]) -> Optional[int]:
    """
    Zero-based index of the failing batch operation, when the service put
    it in front of the error message ("2:One of the request inputs ...").
    """
    if info is None or not info.message:
        return None
    m = _BATCH_INDEX_RE.match(info.message)
    return int(m.group(1)) if m else None
