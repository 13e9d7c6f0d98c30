"""
VCEK Certificate Extension Parsing for AMD SEV-SNP attestation.

The VCEK binds its key to one chip and one firmware state through AMD
specific X.509 extensions:

    1.3.6.1.4.1.3704.1.1      - Struct version (INTEGER)
    1.3.6.1.4.1.3704.1.2      - Product name (IA5String)
    1.3.6.1.4.1.3704.1.3.1    - Boot loader SPL (INTEGER)
    1.3.6.1.4.1.3704.1.3.2    - TEE SPL (INTEGER)
    1.3.6.1.4.1.3704.1.3.3    - SNP firmware SPL (INTEGER)
    1.3.6.1.4.1.3704.1.3.8    - Microcode SPL (INTEGER)
    1.3.6.1.4.1.3704.1.4      - Hardware ID (64 raw bytes)
    1.3.6.1.4.1.3704.1.5      - CSP ID (VLEK only)

Only struct version 1 is understood; any other version is rejected.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, TypeAlias

from cryptography import x509
from cryptography.x509.oid import ObjectIdentifier
from pyasn1.codec.der import decoder as der_decoder
from pyasn1.type import char, univ

from .abi_sevsnp import CHIP_ID_SIZE, TCBParts
from .types import CertRole, ChainError, ChainErrorKind

# Type alias for certificate extensions
Extensions: TypeAlias = Dict[ObjectIdentifier, bytes]

VCEK_STRUCT_VERSION = 1


class SnpOid:
    """OID extensions for the VCEK, used to verify attestation report"""
    STRUCT_VERSION = ObjectIdentifier("1.3.6.1.4.1.3704.1.1")
    PRODUCT_NAME_1 = ObjectIdentifier("1.3.6.1.4.1.3704.1.2")
    BL_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.1")
    TEE_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.2")
    SNP_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.3")
    UCODE = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.8")
    HWID = ObjectIdentifier("1.3.6.1.4.1.3704.1.4")
    CSP_ID = ObjectIdentifier("1.3.6.1.4.1.3704.1.5")


@dataclass(frozen=True)
class VcekExtensions:
    """
    AMD extensions extracted from a VCEK certificate.

    Attributes:
        struct_version: Extension layout version (always 1)
        product_name: Product name, e.g. "Genoa" or "Milan-B0"
        tcb: TCB version the VCEK was derived for
        hwid: Chip ID the VCEK was derived for (64 bytes)
    """
    struct_version: int
    product_name: str
    tcb: TCBParts
    hwid: bytes

    def __str__(self) -> str:
        return (
            f"VcekExtensions(product={self.product_name}, tcb={self.tcb}, "
            f"hwid={self.hwid.hex()[:16]}...)"
        )


def _bad(message: str) -> ChainError:
    return ChainError(ChainErrorKind.BAD_EXTENSIONS, CertRole.LEAF, message)


@contextmanager
def _asn1_errors(label: str):
    """Wrap unexpected ASN.1 exceptions as ChainError."""
    try:
        yield
    except ChainError:
        raise
    except Exception as e:
        raise _bad(f"Unexpected ASN.1 structure in {label}: {e}") from e


def get_certificate_extensions(cert: x509.Certificate) -> Extensions:
    """Get the raw extension values of a certificate, keyed by OID"""
    extensions = {}
    with _asn1_errors("certificate extensions"):
        for ext in cert.extensions:
            if isinstance(ext.value, x509.UnrecognizedExtension):
                extensions[ext.oid] = ext.value.value
    return extensions


def extract_vcek_extensions(cert: x509.Certificate) -> VcekExtensions:
    """
    Extract the AMD SEV-SNP extensions from a VCEK certificate.

    Args:
        cert: VCEK leaf certificate

    Returns:
        VcekExtensions with product name, TCB and hardware ID

    Raises:
        ChainError: If required extensions are missing, malformed, or of an
            unsupported struct version
    """
    extensions = get_certificate_extensions(cert)

    if SnpOid.CSP_ID in extensions:
        raise _bad(f"unexpected CSP_ID in VCEK certificate: {extensions[SnpOid.CSP_ID]!r}")

    struct_version = _der_integer(_require(extensions, SnpOid.STRUCT_VERSION, "STRUCT_VERSION"), "STRUCT_VERSION")
    if struct_version != VCEK_STRUCT_VERSION:
        raise ChainError(
            ChainErrorKind.UNSUPPORTED_EXTENSION_VERSION,
            CertRole.LEAF,
            f"VCEK extension struct version {struct_version} is not supported, expected {VCEK_STRUCT_VERSION}",
        )

    product_name = _der_ia5string(_require(extensions, SnpOid.PRODUCT_NAME_1, "PRODUCT_NAME_1"), "PRODUCT_NAME_1")

    tcb = TCBParts(
        bl_spl=_spl(extensions, SnpOid.BL_SPL, "BL_SPL"),
        tee_spl=_spl(extensions, SnpOid.TEE_SPL, "TEE_SPL"),
        snp_spl=_spl(extensions, SnpOid.SNP_SPL, "SNP_SPL"),
        ucode_spl=_spl(extensions, SnpOid.UCODE, "UCODE"),
    )

    hwid = _require(extensions, SnpOid.HWID, "HWID")
    if len(hwid) != CHIP_ID_SIZE:
        raise _bad(f"HWID extension has wrong size: expected {CHIP_ID_SIZE}, got {len(hwid)}")

    return VcekExtensions(
        struct_version=struct_version,
        product_name=product_name,
        tcb=tcb,
        hwid=bytes(hwid),
    )


def _require(extensions: Extensions, oid: ObjectIdentifier, name: str) -> bytes:
    if oid not in extensions:
        raise _bad(f"missing {name} extension for VCEK certificate")
    return extensions[oid]


def _spl(extensions: Extensions, oid: ObjectIdentifier, name: str) -> int:
    value = _der_integer(_require(extensions, oid, name), name)
    if value < 0 or value > 0xFF:
        raise _bad(f"{name} value {value} out of byte range")
    return value


def _der_decode(data: bytes, label: str):
    """Decode DER data using pyasn1, rejecting leftover bytes."""
    try:
        result, remainder = der_decoder.decode(data)
    except Exception as e:
        raise _bad(f"Failed to decode ASN.1 {label}: {e}") from e
    if remainder:
        raise _bad(f"Unexpected leftover bytes after decoding {label}: {len(remainder)} bytes")
    return result


def _der_integer(data: bytes, label: str) -> int:
    value = _der_decode(data, label)
    if not isinstance(value, univ.Integer):
        raise _bad(f"{label} is not a DER INTEGER: {data.hex()}")
    return int(value)


def _der_ia5string(data: bytes, label: str) -> str:
    value = _der_decode(data, label)
    if not isinstance(value, char.IA5String):
        raise _bad(f"{label} is not a DER IA5String: {data.hex()}")
    with _asn1_errors(label):
        return str(value)
