"""
Builders for synthetic SEV-SNP test material.

Generates a throwaway ARK > ASK > VCEK PKI with real keys, VCEK extensions
encoded the way AMD KDS encodes them, and reports signed by the VCEK key.
"""

import datetime
from dataclasses import dataclass, replace
from typing import Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID
from pyasn1.codec.der import encoder as der_encoder
from pyasn1.type import char, univ

from sev_attest.abi_sevsnp import (
    AttestationReport,
    GENOA_MODEL,
    SIGNATURE_REGION_SIZE,
    TCBParts,
    ZEN3ZEN4_FAMILY,
    with_signature,
)
from sev_attest.cert_table import ARK_GUID, ASK_GUID, VCEK_GUID, encode_cert_table
from sev_attest.vcek_extensions import SnpOid
from sev_attest.verify import TrustAnchors, cert_pubkey_fp

TCB = TCBParts(bl_spl=7, tee_spl=0, snp_spl=14, ucode_spl=72)
HWID = bytes(range(64))
MEASUREMENT = bytes.fromhex("ab" * 48)
REPORT_DATA = b"nonce-0123456789".ljust(64, b"\x00")

NOT_BEFORE = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
NOT_AFTER = datetime.datetime(2049, 1, 1, tzinfo=datetime.timezone.utc)

# Guest policy: reserved bit 17 and SMT allowed
DEFAULT_POLICY = (1 << 17) | (1 << 16)


def name(cn: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Advanced Micro Devices"),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def vcek_extension_values(
    tcb: TCBParts = TCB,
    hwid: bytes = HWID,
    product_name: str = "Genoa",
    struct_version: int = 1,
) -> Dict[x509.ObjectIdentifier, bytes]:
    """VCEK extension values keyed by OID, DER encoded like AMD KDS does"""
    return {
        SnpOid.STRUCT_VERSION: der_encoder.encode(univ.Integer(struct_version)),
        SnpOid.PRODUCT_NAME_1: der_encoder.encode(char.IA5String(product_name)),
        SnpOid.BL_SPL: der_encoder.encode(univ.Integer(tcb.bl_spl)),
        SnpOid.TEE_SPL: der_encoder.encode(univ.Integer(tcb.tee_spl)),
        SnpOid.SNP_SPL: der_encoder.encode(univ.Integer(tcb.snp_spl)),
        SnpOid.UCODE: der_encoder.encode(univ.Integer(tcb.ucode_spl)),
        SnpOid.HWID: hwid,
    }


def make_cert(
    subject: str,
    issuer: str,
    public_key,
    signing_key,
    extensions: Optional[Dict[x509.ObjectIdentifier, bytes]] = None,
    algorithm: Optional[hashes.HashAlgorithm] = None,
    not_before: datetime.datetime = NOT_BEFORE,
    not_after: datetime.datetime = NOT_AFTER,
) -> x509.Certificate:
    """Issue a certificate for *public_key*, signed by *signing_key*."""
    builder = (
        x509.CertificateBuilder()
        .subject_name(name(subject))
        .issuer_name(name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    for oid, value in (extensions or {}).items():
        builder = builder.add_extension(x509.UnrecognizedExtension(oid, value), critical=False)

    if isinstance(signing_key, rsa.RSAPrivateKey):
        algorithm = algorithm or hashes.SHA384()
        return builder.sign(
            signing_key,
            algorithm,
            rsa_padding=padding.PSS(mgf=padding.MGF1(algorithm), salt_length=algorithm.digest_size),
        )
    if algorithm is None:
        algorithm = hashes.SHA256() if signing_key.curve.name == "secp256r1" else hashes.SHA384()
    return builder.sign(signing_key, algorithm)


@dataclass
class Pki:
    ark_key: object
    ask_key: object
    vcek_key: ec.EllipticCurvePrivateKey
    ark: x509.Certificate
    ask: x509.Certificate
    vcek: x509.Certificate

    @property
    def anchors(self) -> TrustAnchors:
        return TrustAnchors(root_fingerprints=frozenset({cert_pubkey_fp(self.ark)}))

    def cert_table(self) -> bytes:
        return encode_cert_table([
            (ARK_GUID, der(self.ark)),
            (ASK_GUID, der(self.ask)),
            (VCEK_GUID, der(self.vcek)),
        ])

    def reissue_vcek(self, **extension_args) -> "Pki":
        """Same ARK and ASK, VCEK for the same key with different extensions"""
        vcek = make_cert(
            "SEV-VCEK", "SEV-Genoa", self.vcek_key.public_key(), self.ask_key,
            extensions=vcek_extension_values(**extension_args),
        )
        return replace(self, vcek=vcek)


def build_pki(ca_key_factory=None, tcb: TCBParts = TCB, hwid: bytes = HWID) -> Pki:
    """Build an ARK > ASK > VCEK chain. CA keys are P-384 unless *ca_key_factory* is given."""
    if ca_key_factory is None:
        ca_key_factory = lambda: ec.generate_private_key(ec.SECP384R1())
    ark_key = ca_key_factory()
    ask_key = ca_key_factory()
    vcek_key = ec.generate_private_key(ec.SECP384R1())

    ark = make_cert("ARK-Genoa", "ARK-Genoa", ark_key.public_key(), ark_key)
    ask = make_cert("SEV-Genoa", "ARK-Genoa", ask_key.public_key(), ark_key)
    vcek = make_cert(
        "SEV-VCEK", "SEV-Genoa", vcek_key.public_key(), ask_key,
        extensions=vcek_extension_values(tcb=tcb, hwid=hwid),
    )
    return Pki(ark_key=ark_key, ask_key=ask_key, vcek_key=vcek_key, ark=ark, ask=ask, vcek=vcek)


def rsa_ca_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def make_report(**overrides) -> AttestationReport:
    """An unsigned version 3 Genoa report that passes every default check"""
    tcb = TCB.to_int()
    fields = dict(
        version=3,
        guest_svn=1,
        policy=DEFAULT_POLICY,
        family_id=bytes(16),
        image_id=bytes(16),
        vmpl=0,
        signature_algo=1,
        current_tcb=tcb,
        platform_info=1,  # SMT enabled
        signer_info=0,    # VCEK, chip ID not masked
        report_data=REPORT_DATA,
        measurement=MEASUREMENT,
        host_data=bytes(32),
        id_key_digest=bytes(48),
        author_key_digest=bytes(48),
        report_id=bytes(range(32)),
        report_id_ma=b"\xff" * 32,
        reported_tcb=tcb,
        chip_id=HWID,
        committed_tcb=tcb,
        current_build=21,
        current_minor=55,
        current_major=1,
        committed_build=21,
        committed_minor=55,
        committed_major=1,
        launch_tcb=tcb,
        signature=bytes(SIGNATURE_REGION_SIZE),
        family=ZEN3ZEN4_FAMILY,
        model=GENOA_MODEL,
        stepping=1,
    )
    fields.update(overrides)
    return AttestationReport(**fields)


def sign_report(report: AttestationReport, key: ec.EllipticCurvePrivateKey) -> AttestationReport:
    """Sign the report body with *key* and store (r, s) little-endian"""
    signature = key.sign(report.signed_data, ec.ECDSA(hashes.SHA384()))
    r, s = decode_dss_signature(signature)
    return with_signature(report, r, s)
