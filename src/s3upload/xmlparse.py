"""Turn S3 XML response bodies into plain dictionaries.

S3 answers most control requests with small XML documents, e.g.::

    <InitiateMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
        <Bucket>bucket</Bucket>
        <Key>key</Key>
        <UploadId>abc</UploadId>
    </InitiateMultipartUploadResult>

which :func:`parse_xml` returns as
``{"InitiateMultipartUploadResult": {"Bucket": "bucket", "Key": "key", "UploadId": "abc"}}``.
"""
from __future__ import annotations

from typing import Any, Optional, Tuple
from xml.etree import ElementTree as ET

from .exceptions import XMLParseError

__all__ = ["parse_xml", "error_details"]


def _local_name(tag: str) -> str:
    # "{namespace}Tag" -> "Tag"
    return tag.rsplit("}", 1)[-1]


def _to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()

    result: dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = _to_value(child)
        if name in result:
            existing = result[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[name] = [existing, value]
        else:
            result[name] = value
    return result


def parse_xml(text: str) -> Optional[dict[str, Any]]:
    """Parse *text* into a nested dict keyed by the root element name.

    Empty bodies (as returned by PUT object / upload part) yield ``None``.
    Raises :class:`XMLParseError` if the document is not well-formed.
    """
    if not text or not text.strip():
        return None
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise XMLParseError(f"Malformed XML response: {exc}") from exc
    return {_local_name(root.tag): _to_value(root)}


def error_details(text: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(code, message)`` from an S3 ``<Error>`` document, if it is one."""
    try:
        parsed = parse_xml(text)
    except XMLParseError:
        return None, None
    if not parsed or not isinstance(parsed.get("Error"), dict):
        return None, None
    error = parsed["Error"]
    return error.get("Code") or None, error.get("Message") or None
