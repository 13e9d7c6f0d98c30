"""
Certificate table parsing for SEV-SNP extended attestation reports.

The host returns endorsement certificates alongside an extended report as
a table of fixed-size entries followed by the certificate blobs:

    struct cert_table_entry {
        uint8_t  guid[16];
        uint32_t offset;   /* from start of table */
        uint32_t length;
    };

The entry list is terminated by an all-zero entry. Offsets and lengths are
little-endian. GUIDs use RFC 4122 byte order.
"""

import uuid
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from cryptography import x509
from cryptography.utils import CryptographyDeprecationWarning

from .types import CertRole, DecodeError, DecodeErrorKind

ENTRY_SIZE = 24
GUID_SIZE = 16

ARK_GUID = uuid.UUID("c0b406a4-a803-4952-9743-3fb6014cd0ae")
ASK_GUID = uuid.UUID("4ab7b379-bbac-4fe4-a02f-05aef327c782")
VCEK_GUID = uuid.UUID("63da758d-e664-4564-adc5-f4b93be8accd")
VLEK_GUID = uuid.UUID("a8074bc2-a25a-483e-aae6-39c045a0b8a1")

_ROLE_GUIDS = {
    CertRole.ROOT: ARK_GUID,
    CertRole.SIGNING: ASK_GUID,
    CertRole.LEAF: VCEK_GUID,
}

_ZERO_ENTRY = bytes(ENTRY_SIZE)


@dataclass(frozen=True)
class CertTable:
    """Decoded certificate table: entry GUID -> certificate bytes."""
    entries: Dict[uuid.UUID, bytes] = field(default_factory=dict)

    def get(self, guid: uuid.UUID) -> Optional[bytes]:
        return self.entries.get(guid)

    def certificate(self, role: CertRole) -> x509.Certificate:
        """Load the certificate for *role* from the table."""
        guid = _ROLE_GUIDS[role]
        raw = self.entries.get(guid)
        if raw is None:
            raise DecodeError(
                DecodeErrorKind.MISSING_ENTRY,
                f"certificate table has no {role.value} certificate (GUID {guid})",
            )
        return load_certificate(raw, role)


def parse_cert_table(data: bytes) -> CertTable:
    """
    Parse a certificate table.

    Args:
        data: Raw certificate table bytes

    Returns:
        CertTable mapping each entry GUID to its certificate bytes

    Raises:
        DecodeError: If the table is truncated or an entry points outside it
    """
    data = bytes(data)
    entries: Dict[uuid.UUID, bytes] = {}
    headers = []

    pos = 0
    while True:
        if pos + ENTRY_SIZE > len(data):
            raise DecodeError(
                DecodeErrorKind.TOO_SHORT,
                f"certificate table has no terminating entry within {len(data)} bytes",
            )
        raw_entry = data[pos:pos + ENTRY_SIZE]
        pos += ENTRY_SIZE
        if raw_entry == _ZERO_ENTRY:
            break
        guid = uuid.UUID(bytes=raw_entry[:GUID_SIZE])
        offset = int.from_bytes(raw_entry[16:20], byteorder="little")
        length = int.from_bytes(raw_entry[20:24], byteorder="little")
        headers.append((guid, offset, length))

    header_end = pos
    for guid, offset, length in headers:
        if offset < header_end or offset + length > len(data):
            raise DecodeError(
                DecodeErrorKind.MALFORMED_OFFSET,
                f"entry {guid} spans [0x{offset:x}:0x{offset + length:x}], "
                f"outside the certificate area [0x{header_end:x}:0x{len(data):x}]",
            )
        if guid in entries:
            raise DecodeError(DecodeErrorKind.DUPLICATE_ENTRY, f"duplicate entry for GUID {guid}")
        entries[guid] = data[offset:offset + length]

    return CertTable(entries=entries)


def encode_cert_table(entries: Iterable[Tuple[uuid.UUID, bytes]]) -> bytes:
    """Build a certificate table from (GUID, certificate bytes) pairs."""
    entries = list(entries)
    header_size = ENTRY_SIZE * (len(entries) + 1)

    header = b""
    body = b""
    for guid, blob in entries:
        offset = header_size + len(body)
        header += guid.bytes
        header += offset.to_bytes(4, "little")
        header += len(blob).to_bytes(4, "little")
        body += blob
    return header + _ZERO_ENTRY + body


def load_certificate(data: bytes, role: CertRole) -> x509.Certificate:
    """Load a DER or PEM certificate, wrapping parse errors as DecodeError."""
    try:
        if data.lstrip(b"\x00\n\r\t ").startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data.strip(b"\x00\n\r\t "))
        # cryptography 46+ emits a deprecation warning for non-positive serial numbers,
        # which AMD VCEKs carry.
        with warnings.catch_warnings():
            warnings.filterwarnings(
                "ignore",
                message=r"Parsed a serial number which wasn't positive",
                category=CryptographyDeprecationWarning,
            )
            return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise DecodeError(
            DecodeErrorKind.MALFORMED_CERTIFICATE,
            f"Failed to parse {role.value} certificate: {e}",
        ) from e
