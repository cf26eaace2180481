"""Structural classification of gateway responses.

Everything here is a pure function of the parsed response tree, so the
classification can be tested apart from any status bookkeeping.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum

from docrelay.core.errors import ClassificationError
from docrelay.core.schema import Status
from docrelay.core.xmlio import find_local, iter_local, text_of

FSSP_NS = "urn://x-artifacts-fssp-ru/mvv/smev3/application-documents/1.1.1"
EGRN_NS = "urn://x-artefacts-rosreestr-gov-ru/virtual-services/egrn-statement/1.2.2"
FAULTS_NS = "urn://x-artefacts-smev-gov-ru/services/service-adapter/types/faults"

# progress codes of the statement-processing service that are not final
EGRN_PROGRESS_CODES = frozenset({"5", "7", "8", "9", "10"})

STATUS_PREFIXES: tuple[tuple[str, Status], ...] = (
    ("Сообщение отправлено в СМЭВ", Status.SENT),
    ("Сообщение помещено в очередь", Status.POSTED),
    ("Сообщение доставлено", Status.DELIVERED),
)


class ResponseKind(str, Enum):
    PRIMARY = "PRIMARY"
    STATUS = "STATUS"
    BUSINESS_STATUS = "BUSINESS_STATUS"
    REJECT = "REJECT"
    ERROR = "ERROR"
    INBOUND_REQUEST = "INBOUND_REQUEST"


class ResponseFamily(str, Enum):
    GENERIC = "generic"
    DOCUMENTS = "documents"
    STATEMENT = "statement"


@dataclass(slots=True)
class ParsedResponse:
    kind: ResponseKind
    family: ResponseFamily = ResponseFamily.GENERIC
    client_id: str | None = None
    message_id: str | None = None
    reply_to: str | None = None
    original_message_id: str | None = None


def classify(root: ET.Element) -> ParsedResponse:
    client_id = text_of(root, "clientId")
    if find_local(root, "ApplicationDocumentsRequest", FSSP_NS) is not None:
        return ParsedResponse(ResponseKind.INBOUND_REQUEST, ResponseFamily.DOCUMENTS, client_id=client_id)

    family = ResponseFamily.GENERIC
    if find_local(root, "ApplicationDocumentsResponse", FSSP_NS) is not None:
        family = ResponseFamily.DOCUMENTS
    elif find_local(root, "Response", EGRN_NS) is not None:
        family = ResponseFamily.STATEMENT

    message_type = text_of(root, "messageType")
    if message_type is None:
        raise ClassificationError("response carries no messageType", source="classifier")

    if message_type == "StatusMessage":
        kind = ResponseKind.BUSINESS_STATUS if find_local(root, "Sender") is not None else ResponseKind.STATUS
    elif message_type == "PrimaryMessage":
        kind = ResponseKind.PRIMARY
        if family is ResponseFamily.DOCUMENTS:
            kind = ResponseKind.BUSINESS_STATUS
        elif family is ResponseFamily.STATEMENT and text_of(root, "code", EGRN_NS) in EGRN_PROGRESS_CODES:
            kind = ResponseKind.BUSINESS_STATUS
    elif message_type == "RejectMessage":
        kind = ResponseKind.REJECT
    elif message_type == "ErrorMessage":
        kind = ResponseKind.ERROR
    else:
        raise ClassificationError(f"unsupported messageType {message_type!r}", source="classifier")

    return ParsedResponse(
        kind,
        family,
        client_id=client_id,
        message_id=text_of(root, "MessageId"),
        reply_to=text_of(root, "replyToClientId") or text_of(root, "originalClientId"),
        original_message_id=text_of(root, "OriginalMessageID"),
    )


def _texts(element: ET.Element, name: str, namespace: str | None = None) -> str:
    return text_of(element, name, namespace) or ""


def status_from_description(root: ET.Element) -> Status | None:
    description = _texts(root, "description")
    for prefix, status in STATUS_PREFIXES:
        if description.startswith(prefix):
            return status
    return None


def business_status_details(root: ET.Element, family: ResponseFamily) -> tuple[str, str]:
    if family is ResponseFamily.DOCUMENTS:
        return _texts(root, "ReceiptResult"), _texts(root, "MessageText")

    if family is ResponseFamily.STATEMENT:
        code = _texts(root, "code", EGRN_NS)
        description = _texts(root, "name", EGRN_NS)
        state = text_of(root, "StateDescription", EGRN_NS)
        if state:
            description += f";{state}"
        for parameter in iter_local(root, "StateParameter", EGRN_NS):
            code += f";{_texts(parameter, 'Key', EGRN_NS)}"
            description += f";{_texts(parameter, 'Value', EGRN_NS)}"
        return code, description

    code = _texts(root, "code")
    description = _texts(root, "description")
    for parameter in iter_local(root, "parameter"):
        key = text_of(parameter, "key")
        if key is not None:
            description += f"; {key}"
        value = text_of(parameter, "value")
        if value is not None:
            description += f":{value}"
    return code, description


def reject_details(root: ET.Element) -> tuple[str, str]:
    codes: list[str] = []
    descriptions: list[str] = []
    for reject in iter_local(root, "rejects"):
        code = text_of(reject, "code")
        if code:
            codes.append(code)
        description = text_of(reject, "description")
        if description:
            descriptions.append(description)
    return " ".join(codes), " ".join(descriptions)


def error_details(root: ET.Element) -> tuple[str, str, str]:
    source = _texts(root, "type")
    code = _texts(root, "code", FAULTS_NS)
    description = _texts(root, "description", FAULTS_NS)
    details = text_of(root, "details")
    if details:
        description += f"\n{details}"
    return source, code, description
