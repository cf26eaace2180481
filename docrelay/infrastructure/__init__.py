"""Infrastructure layer exports."""

from .converter import AttachmentRef, DocumentConverter, EnvelopeConverter
from .gateway_sources import DuckDBGatewaySource, GatewaySource, GatewaySourceError
from .logstore import DuckDBLogStore, LogStore
from .registry import DocumentTypeRegistry
from .signer import HttpSigningClient, SignerState, SigningService

__all__ = [
    "AttachmentRef",
    "DocumentConverter",
    "EnvelopeConverter",
    "DuckDBGatewaySource",
    "GatewaySource",
    "GatewaySourceError",
    "DuckDBLogStore",
    "LogStore",
    "DocumentTypeRegistry",
    "HttpSigningClient",
    "SignerState",
    "SigningService",
]
