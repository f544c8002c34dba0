"""
Pure functions for building storage service XML bodies.

All functions in this module are pure - they take data in and return XML out,
with no side effects or I/O.
"""
from datetime import datetime
from datetime import timezone
from typing import Optional

from lxml import etree

from storagewire.lib.namespace import ns
from storagewire.lib.namespace import nsmap

from .entity import PARTITION_KEY
from .entity import ROW_KEY
from .entity import Entity
from .entity import encode_property
from .entity import format_datetime
from .types import ContinuationToken
from .types import EdmType
from .xml_parsers import TOKEN_VERSION


def build_atom_entry(entity: Entity, updated: Optional[datetime] = None) -> bytes:
    """
    Build a legacy Atom ``<entry>`` body for an entity write.

    Atom has no typed literals, so every property that is not a String
    gets ``m:type``.  Null properties get ``m:null="true"``.

    Args:
        entity: The entity to serialize
        updated: Value of the Atom ``<updated>`` element, now if None

    Returns:
        UTF-8 encoded XML bytes
    """
    entry = etree.Element(
        ns("atom", "entry"), nsmap={None: nsmap["atom"], "d": nsmap["d"], "m": nsmap["m"]}
    )
    etree.SubElement(entry, ns("atom", "title"))
    etree.SubElement(entry, ns("atom", "updated")).text = format_datetime(
        updated or datetime.now(timezone.utc)
    )
    author = etree.SubElement(entry, ns("atom", "author"))
    etree.SubElement(author, ns("atom", "name"))
    etree.SubElement(entry, ns("atom", "id"))
    content = etree.SubElement(entry, ns("atom", "content"), type="application/xml")
    properties = etree.SubElement(content, ns("m", "properties"))

    etree.SubElement(properties, ns("d", PARTITION_KEY)).text = entity.partition_key
    etree.SubElement(properties, ns("d", ROW_KEY)).text = entity.row_key
    for name, prop in entity.properties.items():
        text, _ = encode_property(prop)
        element = etree.SubElement(properties, ns("d", name))
        if prop.edm_type is not EdmType.STRING:
            element.set(ns("m", "type"), prop.edm_type.value)
        if text is None:
            element.set(ns("m", "null"), "true")
        else:
            element.text = text

    return etree.tostring(entry, encoding="utf-8", xml_declaration=True)


def continuation_to_xml(token: ContinuationToken) -> bytes:
    """
    Serialize a continuation token for persisting it between processes.

    Only the fields that are set are written; reading the document back
    with :func:`~storagewire.protocol.xml_parsers.continuation_from_xml`
    gives an equal token.
    """
    root = etree.Element("ContinuationToken")
    etree.SubElement(root, "Version").text = TOKEN_VERSION
    etree.SubElement(root, "Type").text = token.kind.value
    for element, value in (
        ("NextPartitionKey", token.next_partition_key),
        ("NextRowKey", token.next_row_key),
        ("NextTableName", token.next_table_name),
        ("NextMarker", token.next_marker),
    ):
        if value is not None:
            etree.SubElement(root, element).text = value
    return etree.tostring(root, encoding="utf-8", xml_declaration=True)
