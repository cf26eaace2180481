from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from docrelay.core.errors import MalformedDocumentError, ParsingError

logger = logging.getLogger(__name__)


def parse_file(path: Path) -> ET.Element:
    try:
        return ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ParsingError(f"{path.name}: {exc}", source="xml") from exc


def parse_bytes(content: bytes) -> ET.Element:
    try:
        return ET.fromstring(content)
    except ET.ParseError as exc:
        raise ParsingError(str(exc), source="xml") from exc


def to_bytes(element: ET.Element) -> bytes:
    return ET.tostring(element, encoding="utf-8", xml_declaration=True)


def split_tag(tag: str) -> tuple[str, str]:
    """Split ``{namespace}local`` into its two parts."""

    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return "", tag


def local_name(element: ET.Element) -> str:
    return split_tag(element.tag)[1]


def namespace_of(element: ET.Element) -> str:
    return split_tag(element.tag)[0]


def iter_local(root: ET.Element, name: str, namespace: str | None = None) -> Iterable[ET.Element]:
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        ns, local = split_tag(element.tag)
        if local == name and (namespace is None or ns == namespace):
            yield element


def find_local(root: ET.Element, name: str, namespace: str | None = None) -> ET.Element | None:
    return next(iter(iter_local(root, name, namespace)), None)


def text_of(root: ET.Element, name: str, namespace: str | None = None) -> str | None:
    element = find_local(root, name, namespace)
    if element is None or element.text is None:
        return None
    text = element.text.strip()
    return text or None


def extract_keywords(root: ET.Element, paths: Iterable[str]) -> str:
    """Join the text of every node matched by ``paths`` with single spaces."""

    parts: list[str] = []
    for path in paths:
        try:
            matches = root.findall(path)
        except (SyntaxError, KeyError) as exc:
            logger.warning("keyword path %r is invalid: %s", path, exc)
            continue
        for match in matches:
            text = "".join(match.itertext()).strip()
            if text:
                parts.append(text)
    return " ".join(parts)


def extract_first(root: ET.Element, path: str) -> str | None:
    try:
        value = root.findtext(path)
    except (SyntaxError, KeyError) as exc:
        logger.warning("path %r is invalid: %s", path, exc)
        return None
    if value is None:
        return None
    return value.strip() or None


def parse_settled(path: Path, *, settle: timedelta, now: datetime) -> ET.Element:
    """Parse ``path``; content still broken once ``settle`` has passed is malformed."""

    try:
        return parse_file(path)
    except ParsingError as exc:
        age = now - datetime.fromtimestamp(path.stat().st_mtime)
        if age >= settle:
            raise MalformedDocumentError(exc.description, source="xml") from exc
        raise
