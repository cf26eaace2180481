"""Document conversion between exchange documents and gateway envelopes.

The gateway speaks the service-adapter ``ClientMessage`` format.  The
default :class:`EnvelopeConverter` wraps a business document into that
envelope and unwraps business payloads out of responses.  Deployments with
format-specific templates hand their own :class:`DocumentConverter` to the
relay service.
"""
from __future__ import annotations

import base64
import copy
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from docrelay.core.schema import DocumentTypeDescriptor
from docrelay.core.xmlio import find_local, iter_local, local_name, text_of, to_bytes

ADAPTER_NS = "urn://x-artefacts-smev-gov-ru/services/service-adapter/types"
CONTAINER_NS = "urn://x-artifacts-fssp-ru/mvv/smev3/container/1.1.0"
FSSP_NS = "urn://x-artifacts-fssp-ru/mvv/smev3/application-documents/1.1.1"
TECH_NS = "urn://docrelay/technical-description/1.0"

ET.register_namespace("tns", ADAPTER_NS)


def _q(name: str, namespace: str = ADAPTER_NS) -> str:
    return f"{{{namespace}}}{name}"


def _sub(parent: ET.Element, name: str, text: str | None = None, namespace: str = ADAPTER_NS) -> ET.Element:
    element = ET.SubElement(parent, _q(name, namespace))
    if text is not None:
        element.text = text
    return element


@dataclass(slots=True)
class AttachmentRef:
    """Reference to a file placed in the gateway's outbound attachment storage."""

    file_path: str
    signature: bytes | None = None


class DocumentConverter(Protocol):
    """Contract for the exchange/gateway format transformations."""

    def build_envelope(
        self,
        document: ET.Element,
        *,
        correlation_id: str,
        signature: bytes | None = None,
        attachment: AttachmentRef | None = None,
    ) -> bytes: ...

    def extract_payload(self, response: ET.Element) -> bytes: ...

    def describe(self, document: ET.Element, descriptor: DocumentTypeDescriptor, file_name: str) -> bytes: ...

    def rewrite_request(
        self, document: ET.Element, descriptor: DocumentTypeDescriptor, *, correlation_id: str, archive_name: str
    ) -> ET.Element: ...

    def split_container(self, request: ET.Element, document_key: str) -> bytes: ...

    def acknowledge(self, request: ET.Element, *, timestamp: datetime) -> bytes: ...


class EnvelopeConverter:
    def __init__(self, it_system: str = "DOCRELAY") -> None:
        self._it_system = it_system

    def build_envelope(
        self,
        document: ET.Element,
        *,
        correlation_id: str,
        signature: bytes | None = None,
        attachment: AttachmentRef | None = None,
    ) -> bytes:
        root = ET.Element(_q("ClientMessage"))
        _sub(root, "itSystem", self._it_system)
        message = _sub(root, "RequestMessage")
        metadata = _sub(message, "RequestMetadata")
        _sub(metadata, "clientId", correlation_id)
        content = _sub(_sub(message, "RequestContent"), "content")
        _sub(content, "MessagePrimaryContent").append(copy.deepcopy(document))
        if signature is not None:
            _sub(content, "PersonalSignature", base64.b64encode(signature).decode("ascii"))
        if attachment is not None:
            header = _sub(_sub(content, "AttachmentHeaderList"), "AttachmentHeader")
            _sub(header, "filePath", attachment.file_path)
            if attachment.signature is not None:
                _sub(header, "SignaturePKCS7", base64.b64encode(attachment.signature).decode("ascii"))
            _sub(header, "TransferMethod", "REFERENCE")
        return to_bytes(root)

    def extract_payload(self, response: ET.Element) -> bytes:
        primary = find_local(response, "MessagePrimaryContent")
        if primary is not None:
            for child in primary:
                return to_bytes(child)
        return to_bytes(response)

    def describe(self, document: ET.Element, descriptor: DocumentTypeDescriptor, file_name: str) -> bytes:
        root = ET.Element(_q("TechDescription", TECH_NS))
        _sub(root, "documentType", descriptor.name, TECH_NS)
        _sub(root, "rootElement", local_name(document), TECH_NS)
        _sub(root, "fileName", file_name, TECH_NS)
        _sub(root, "createdAt", datetime.now().replace(microsecond=0).isoformat(), TECH_NS)
        return to_bytes(root)

    def rewrite_request(
        self, document: ET.Element, descriptor: DocumentTypeDescriptor, *, correlation_id: str, archive_name: str
    ) -> ET.Element:
        root = ET.Element(_q("Request", descriptor.namespace))
        _sub(root, "requestId", correlation_id, descriptor.namespace)
        statement = _sub(root, "statementFile", namespace=descriptor.namespace)
        _sub(statement, "fileName", archive_name, descriptor.namespace)
        _sub(root, "requestType", local_name(document), descriptor.namespace)
        return root

    def split_container(self, request: ET.Element, document_key: str) -> bytes:
        """Copy of ``request`` holding only the container document ``document_key``."""

        result = copy.deepcopy(request)
        parents = {child: parent for parent in result.iter() for child in parent}
        for document in list(iter_local(result, "Document", CONTAINER_NS)):
            if text_of(document, "IncomingDocKey") != document_key:
                parents[document].remove(document)
        return to_bytes(result)

    def acknowledge(self, request: ET.Element, *, timestamp: datetime) -> bytes:
        root = ET.Element(_q("ClientMessage"))
        _sub(root, "itSystem", self._it_system)
        message = _sub(root, "ResponseMessage")
        metadata = _sub(message, "ResponseMetadata")
        _sub(metadata, "clientId", str(uuid.uuid4()))
        _sub(metadata, "replyToClientId", text_of(request, "clientId") or "")
        content = _sub(_sub(message, "ResponseContent"), "content")
        answer = _sub(_sub(content, "MessagePrimaryContent"), "ApplicationDocumentsResponse", namespace=FSSP_NS)
        _sub(answer, "ReceiptDate", timestamp.replace(microsecond=0).isoformat(), FSSP_NS)
        _sub(answer, "ReceiptResult", "1", FSSP_NS)
        keys = [text_of(document, "IncomingDocKey") or "" for document in iter_local(request, "Document", CONTAINER_NS)]
        _sub(answer, "MessageText", " ".join(key for key in keys if key), FSSP_NS)
        return to_bytes(root)

