"""
AMD SEV-SNP certificate chain and report signature verification.

Verification flow:
1. Verify the ARK self-signature over its signed body
2. Check each certificate against the format rules of its role, then the ARK pin
3. Verify ASK is issued by the ARK and VCEK is issued by the ASK
4. Verify the report signature (ECDSA P-384 over bytes 0x000-0x2A0) with the VCEK key
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterator, Mapping, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from cryptography.x509.oid import SignatureAlgorithmOID

from .abi_sevsnp import (
    AttestationReport,
    ReportSigner,
    SIGNATURE_ALGO_ECDSA_P384_SHA384,
    TCBParts,
)
from .cert_table import CertTable
from .types import (
    CertRole,
    ChainError,
    ChainErrorKind,
    TrustMode,
    VerifyError,
    VerifyErrorKind,
)
from .vcek_extensions import VcekExtensions, extract_vcek_extensions

logger = logging.getLogger(__name__)

# Order of the P-384 group; valid ECDSA R and S values lie in [1, n)
P384_ORDER = int(
    "ffffffffffffffffffffffffffffffffffffffffffffffff"
    "c7634d81f4372ddf581a0db248b0a77aecec196accc52973",
    16,
)
P384_COMPONENT_SIZE = 48

# Curve -> the only hash it may be paired with
_CURVE_HASHES = {
    "secp384r1": hashes.SHA384,
    "secp256r1": hashes.SHA256,
}

_ECDSA_OIDS = (
    SignatureAlgorithmOID.ECDSA_WITH_SHA256,
    SignatureAlgorithmOID.ECDSA_WITH_SHA384,
)


@dataclass(frozen=True)
class Certificate:
    """
    One link of the trust chain: the X.509 payload tagged with its role.

    Only the LEAF role carries decoded VCEK extensions.
    """
    role: CertRole
    cert: x509.Certificate
    extensions: Optional[VcekExtensions] = None

    @classmethod
    def root(cls, cert: x509.Certificate) -> "Certificate":
        return cls(role=CertRole.ROOT, cert=cert)

    @classmethod
    def signing(cls, cert: x509.Certificate) -> "Certificate":
        return cls(role=CertRole.SIGNING, cert=cert)

    @classmethod
    def leaf(cls, cert: x509.Certificate) -> "Certificate":
        return cls(role=CertRole.LEAF, cert=cert, extensions=extract_vcek_extensions(cert))


@dataclass(frozen=True)
class CertChain:
    """Represents the SEV certificate chain (ARK > ASK > VCEK)"""
    root: Certificate
    signing: Certificate
    leaf: Certificate

    @classmethod
    def from_certificates(
        cls, ark: x509.Certificate, ask: x509.Certificate, vcek: x509.Certificate
    ) -> "CertChain":
        return cls(
            root=Certificate.root(ark),
            signing=Certificate.signing(ask),
            leaf=Certificate.leaf(vcek),
        )

    @classmethod
    def from_table(cls, table: CertTable) -> "CertChain":
        """Build the chain from the ARK, ASK and VCEK entries of a certificate table"""
        return cls.from_certificates(
            ark=table.certificate(CertRole.ROOT),
            ask=table.certificate(CertRole.SIGNING),
            vcek=table.certificate(CertRole.LEAF),
        )

    def __iter__(self) -> Iterator[Certificate]:
        return iter((self.root, self.signing, self.leaf))


@dataclass(frozen=True)
class TrustAnchors:
    """
    Trust configuration for the root of the chain.

    Any root whose public key fingerprint appears in ``root_fingerprints``
    is trusted. With no pins configured, a self-signed root is accepted only
    when ``allow_unpinned_root`` is set, and the resulting verdict reports
    the weaker ``TrustMode.SELF_SIGNED_ONLY``.
    """
    root_fingerprints: FrozenSet[str] = frozenset()
    allow_unpinned_root: bool = False
    # When set, every certificate must be valid at this instant
    validation_time: Optional[datetime] = None

    def __post_init__(self):
        normalized = frozenset(fp.lower().replace(":", "") for fp in self.root_fingerprints)
        for fp in normalized:
            if len(fp) != 64 or any(c not in "0123456789abcdef" for c in fp):
                raise ValueError(f"root fingerprint must be a SHA-256 hex digest, got {fp!r}")
        object.__setattr__(self, "root_fingerprints", normalized)
        if self.validation_time is not None and self.validation_time.tzinfo is None:
            object.__setattr__(self, "validation_time", self.validation_time.replace(tzinfo=timezone.utc))

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "TrustAnchors":
        unknown = set(options) - {"root_fingerprints", "allow_unpinned_root", "validation_time"}
        if unknown:
            raise ValueError(f"Unknown trust anchor options: {sorted(unknown)}")
        validation_time = options.get("validation_time")
        if isinstance(validation_time, str):
            validation_time = datetime.fromisoformat(validation_time)
        return cls(
            root_fingerprints=frozenset(options.get("root_fingerprints", ())),
            allow_unpinned_root=bool(options.get("allow_unpinned_root", False)),
            validation_time=validation_time,
        )


@dataclass(frozen=True)
class TrustedLeafKey:
    """The VCEK public key and its bound TCB/chip values, after chain validation"""
    public_key: ec.EllipticCurvePublicKey = field(repr=False)
    extensions: VcekExtensions
    trust_mode: TrustMode

    @property
    def tcb(self) -> TCBParts:
        return self.extensions.tcb

    @property
    def hwid(self) -> bytes:
        return self.extensions.hwid


def key_fp(public_key) -> str:
    """Returns the SHA-256 fingerprint of a public key's SubjectPublicKeyInfo"""
    key_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return hashlib.sha256(key_bytes).hexdigest()


def cert_pubkey_fp(cert: x509.Certificate) -> str:
    """Returns the fingerprint of the public key of a given certificate"""
    return key_fp(cert.public_key())


# =============================================================================
# Role rules
# =============================================================================

def _validate_ca_format(cert: Certificate) -> None:
    _require_v3(cert)
    key = cert.cert.public_key()
    if isinstance(key, ec.EllipticCurvePublicKey):
        if key.curve.name not in _CURVE_HASHES:
            raise ChainError(
                ChainErrorKind.UNSUPPORTED_CURVE,
                cert.role,
                f"{cert.role.value} certificate uses unsupported curve {key.curve.name}",
            )
    elif not isinstance(key, rsa.RSAPublicKey):
        raise ChainError(
            ChainErrorKind.UNSUPPORTED_CURVE,
            cert.role,
            f"{cert.role.value} certificate has unsupported key type {type(key).__name__}",
        )


def _validate_leaf_format(cert: Certificate) -> None:
    """Validate the format of a VCEK certificate"""
    _require_v3(cert)
    key = cert.cert.public_key()
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ChainError(
            ChainErrorKind.UNSUPPORTED_CURVE,
            cert.role,
            f"VCEK certificate public key algorithm is not ECDSA but {type(key).__name__}",
        )
    if key.curve.name != "secp384r1":
        raise ChainError(
            ChainErrorKind.UNSUPPORTED_CURVE,
            cert.role,
            f"VCEK certificate public key curve is not secp384r1 but {key.curve.name}",
        )
    if cert.extensions is None:
        raise ChainError(ChainErrorKind.BAD_EXTENSIONS, cert.role, "VCEK certificate extensions were not decoded")


_ROLE_RULES: Dict[CertRole, Callable[[Certificate], None]] = {
    CertRole.ROOT: _validate_ca_format,
    CertRole.SIGNING: _validate_ca_format,
    CertRole.LEAF: _validate_leaf_format,
}


def _require_v3(cert: Certificate) -> None:
    if cert.cert.version != x509.Version.v3:
        raise ChainError(
            ChainErrorKind.BAD_FORMAT,
            cert.role,
            f"{cert.role.value} certificate version is not 3 but {cert.cert.version}",
        )


# Raised by cryptography when a loaded certificate's version, key or
# algorithm fields cannot be decoded
_UNDECODABLE = (ValueError, TypeError, UnsupportedAlgorithm, x509.InvalidVersion)


@contextmanager
def _decoding(cert: Certificate):
    """Report undecodable certificate fields as BAD_FORMAT at the certificate's level"""
    try:
        yield
    except _UNDECODABLE as e:
        raise ChainError(
            ChainErrorKind.BAD_FORMAT,
            cert.role,
            f"{cert.role.value} certificate cannot be decoded: {type(e).__name__}: {e}",
        ) from e


# =============================================================================
# Chain validation
# =============================================================================

def validate_chain(chain: CertChain, anchors: TrustAnchors) -> TrustedLeafKey:
    """
    Validate the ARK > ASK > VCEK chain and return the trusted VCEK key.

    Args:
        chain: Certificate chain to validate
        anchors: Root pins and trust-mode configuration

    Returns:
        TrustedLeafKey with the VCEK public key, its extensions, and the
        trust mode the root was accepted under

    Raises:
        ChainError: If any link cannot be trusted
    """
    logger.debug("Verifying ARK self-signature")
    _verify_self_signature(chain.root)

    for cert in chain:
        with _decoding(cert):
            _ROLE_RULES[cert.role](cert)

    if anchors.validation_time is not None:
        for cert in chain:
            with _decoding(cert):
                _check_validity(cert, anchors.validation_time)

    with _decoding(chain.root):
        trust_mode = _validate_root(chain.root, anchors)

    logger.debug("Verifying ASK signature by ARK")
    with _decoding(chain.signing):
        _validate_link(chain.signing, chain.root)

    logger.debug("Verifying VCEK signature by ASK")
    with _decoding(chain.leaf):
        _validate_link(chain.leaf, chain.signing)

    logger.info("Certificate chain verified (%s): %s", trust_mode.value, chain.leaf.extensions)
    return TrustedLeafKey(
        public_key=chain.leaf.cert.public_key(),
        extensions=chain.leaf.extensions,
        trust_mode=trust_mode,
    )


def _verify_self_signature(root: Certificate) -> None:
    """
    Verify the ARK's signature over its own TBS bytes with whatever algorithm it declares.

    Any change to the signed body, including one that leaves a field
    undecodable, fails here as SELF_SIGN_FAILED. Algorithm policy is applied
    afterwards by the role rules and _validate_root.
    """
    cert = root.cert
    try:
        key = cert.public_key()
        hash_algorithm = cert.signature_hash_algorithm
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(cert.signature, cert.tbs_certificate_bytes, ec.ECDSA(hash_algorithm))
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(cert.signature, cert.tbs_certificate_bytes, cert.signature_algorithm_parameters, hash_algorithm)
        else:
            raise ChainError(
                ChainErrorKind.UNSUPPORTED_CURVE,
                root.role,
                f"root certificate has unsupported key type {type(key).__name__}",
            )
    except (InvalidSignature,) + _UNDECODABLE as e:
        raise ChainError(
            ChainErrorKind.SELF_SIGN_FAILED,
            root.role,
            f"root certificate self-signature does not verify: {type(e).__name__}",
        ) from e


def _validate_root(root: Certificate, anchors: TrustAnchors) -> TrustMode:
    _verify_signed_by(root.cert, root.cert.public_key(), root.role, ChainErrorKind.SELF_SIGN_FAILED)

    if root.cert.issuer != root.cert.subject:
        raise ChainError(
            ChainErrorKind.ISSUER_SUBJECT_MISMATCH,
            root.role,
            f"ARK issuer {root.cert.issuer.rfc4514_string()} does not match its subject "
            f"{root.cert.subject.rfc4514_string()}",
        )

    fingerprint = cert_pubkey_fp(root.cert)
    if anchors.root_fingerprints:
        if fingerprint not in anchors.root_fingerprints:
            raise ChainError(
                ChainErrorKind.UNTRUSTED_ROOT,
                root.role,
                f"ARK public key fingerprint {fingerprint} is not pinned",
            )
        return TrustMode.PINNED

    if not anchors.allow_unpinned_root:
        raise ChainError(
            ChainErrorKind.UNTRUSTED_ROOT,
            root.role,
            "no root fingerprint is pinned and unpinned roots are not allowed",
        )
    logger.warning("Accepting self-signed ARK %s without a pinned fingerprint", fingerprint)
    return TrustMode.SELF_SIGNED_ONLY


def _validate_link(cert: Certificate, issuer: Certificate) -> None:
    if cert.cert.issuer != issuer.cert.subject:
        raise ChainError(
            ChainErrorKind.ISSUER_SUBJECT_MISMATCH,
            cert.role,
            f"{cert.role.value} issuer {cert.cert.issuer.rfc4514_string()} does not match "
            f"{issuer.role.value} subject {issuer.cert.subject.rfc4514_string()}",
        )
    _verify_signed_by(cert.cert, issuer.cert.public_key(), cert.role, ChainErrorKind.LINK_SIGNATURE_FAILED)


def _verify_signed_by(cert: x509.Certificate, issuer_key, level: CertRole, failure: ChainErrorKind) -> None:
    """Verify *cert*'s signature with the algorithm the certificate declares."""
    try:
        hash_algorithm = cert.signature_hash_algorithm
    except UnsupportedAlgorithm as e:
        raise ChainError(ChainErrorKind.UNSUPPORTED_CURVE, level, f"unsupported signature algorithm: {e}") from e

    try:
        if isinstance(issuer_key, ec.EllipticCurvePublicKey):
            expected_hash = _CURVE_HASHES.get(issuer_key.curve.name)
            if (
                cert.signature_algorithm_oid not in _ECDSA_OIDS
                or expected_hash is None
                or not isinstance(hash_algorithm, expected_hash)
            ):
                raise ChainError(
                    ChainErrorKind.UNSUPPORTED_CURVE,
                    level,
                    f"{level.value} certificate declares {cert.signature_algorithm_oid.dotted_string} "
                    f"for a {issuer_key.curve.name} issuer key",
                )
            issuer_key.verify(cert.signature, cert.tbs_certificate_bytes, ec.ECDSA(hash_algorithm))
        elif isinstance(issuer_key, rsa.RSAPublicKey):
            if cert.signature_algorithm_oid != SignatureAlgorithmOID.RSASSA_PSS:
                raise ChainError(
                    ChainErrorKind.UNSUPPORTED_CURVE,
                    level,
                    f"{level.value} certificate signature algorithm is not RSASSA_PSS "
                    f"but {cert.signature_algorithm_oid.dotted_string}",
                )
            pss = cert.signature_algorithm_parameters
            if not isinstance(pss, padding.PSS):
                raise ChainError(ChainErrorKind.UNSUPPORTED_CURVE, level, "missing RSASSA-PSS parameters")
            issuer_key.verify(cert.signature, cert.tbs_certificate_bytes, pss, hash_algorithm)
        else:
            raise ChainError(
                ChainErrorKind.UNSUPPORTED_CURVE,
                level,
                f"unsupported issuer key type {type(issuer_key).__name__}",
            )
    except InvalidSignature as e:
        raise ChainError(failure, level, f"{level.value} certificate signature does not verify") from e


def _check_validity(cert: Certificate, at: datetime) -> None:
    if at < cert.cert.not_valid_before_utc:
        raise ChainError(
            ChainErrorKind.EXPIRED,
            cert.role,
            f"{cert.role.value} certificate not yet valid (not before {cert.cert.not_valid_before_utc})",
        )
    if at > cert.cert.not_valid_after_utc:
        raise ChainError(
            ChainErrorKind.EXPIRED,
            cert.role,
            f"{cert.role.value} certificate expired (not after {cert.cert.not_valid_after_utc})",
        )


# =============================================================================
# Report signature
# =============================================================================

def verify_report_signature(report: AttestationReport, leaf: TrustedLeafKey) -> bool:
    """
    Verify the attestation report signature using the VCEK public key.

    Returns True on success.

    Raises:
        VerifyError: If the signature is malformed or does not verify
    """
    if report.signature_algo != SIGNATURE_ALGO_ECDSA_P384_SHA384:
        raise VerifyError(
            VerifyErrorKind.MALFORMED_SIGNATURE_ENCODING,
            f"Unknown SignatureAlgo: {report.signature_algo}",
        )

    signing_key = report.signer_info_parsed.signing_key
    if signing_key != ReportSigner.VcekReportSigner:
        raise VerifyError(
            VerifyErrorKind.UNSUPPORTED_SIGNING_KEY,
            f"This implementation only supports VCEK signed reports. Got {signing_key.name}",
        )

    public_key = leaf.public_key
    if not isinstance(public_key, ec.EllipticCurvePublicKey) or public_key.curve.name != "secp384r1":
        raise VerifyError(
            VerifyErrorKind.MALFORMED_SIGNATURE_ENCODING,
            "VCEK doesn't contain a P-384 EC public key",
        )

    der_signature = _signature_to_der(*report.signature_rs)
    try:
        public_key.verify(der_signature, report.signed_data, ec.ECDSA(hashes.SHA384()))
    except InvalidSignature as e:
        raise VerifyError(VerifyErrorKind.SIGNATURE_INVALID, "Attestation signature verification failed") from e

    logger.debug("Report signature verified")
    return True


def _signature_to_der(r_le: bytes, s_le: bytes) -> bytes:
    """
    Convert AMD's little-endian R and S components (72 bytes each, of which
    the upper 24 must be zero for P-384) into a DER ECDSA signature.
    """
    for name, component in (("R", r_le), ("S", s_le)):
        if any(component[P384_COMPONENT_SIZE:]):
            raise VerifyError(
                VerifyErrorKind.MALFORMED_SIGNATURE_ENCODING,
                f"signature {name} has non-zero bytes above the P-384 component size",
            )

    r = int.from_bytes(r_le, byteorder="little")
    s = int.from_bytes(s_le, byteorder="little")
    if not (0 < r < P384_ORDER and 0 < s < P384_ORDER):
        raise VerifyError(
            VerifyErrorKind.MALFORMED_SIGNATURE_ENCODING,
            "signature R or S is outside the P-384 group order",
        )
    return encode_dss_signature(r, s)
