"""
Shared types, errors, and verdict structures for SEV-SNP verification.

This module is the canonical source for types used across the codec,
chain validator, signature verifier and policy checker. It has no
intra-package dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# Certificate roles and trust modes
# =============================================================================

class CertRole(str, Enum):
    """Position of a certificate in the ARK > ASK > VCEK chain"""
    ROOT = "root"        # ARK, self-signed
    SIGNING = "signing"  # ASK
    LEAF = "leaf"        # VCEK


class TrustMode(str, Enum):
    """How the root certificate was accepted"""
    PINNED = "pinned"
    SELF_SIGNED_ONLY = "self-signed-only"


# =============================================================================
# Errors
# =============================================================================

class DecodeErrorKind(str, Enum):
    TOO_SHORT = "too-short"
    TOO_LONG = "too-long"
    BAD_VERSION = "bad-version"
    MALFORMED_OFFSET = "malformed-offset"
    MALFORMED_FIELD = "malformed-field"
    DUPLICATE_ENTRY = "duplicate-entry"
    MISSING_ENTRY = "missing-entry"
    MALFORMED_CERTIFICATE = "malformed-certificate"


class ChainErrorKind(str, Enum):
    SELF_SIGN_FAILED = "self-sign-failed"
    LINK_SIGNATURE_FAILED = "link-signature-failed"
    ISSUER_SUBJECT_MISMATCH = "issuer-subject-mismatch"
    UNSUPPORTED_CURVE = "unsupported-curve"
    UNTRUSTED_ROOT = "untrusted-root"
    BAD_FORMAT = "bad-format"
    BAD_EXTENSIONS = "bad-extensions"
    UNSUPPORTED_EXTENSION_VERSION = "unsupported-extension-version"
    EXPIRED = "expired"


class VerifyErrorKind(str, Enum):
    SIGNATURE_INVALID = "signature-invalid"
    MALFORMED_SIGNATURE_ENCODING = "malformed-signature-encoding"
    UNSUPPORTED_SIGNING_KEY = "unsupported-signing-key"


class AttestationError(Exception):
    """Base class for attestation errors"""
    stage = "attestation"

    def __init__(self, kind: Enum, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def to_failure(self) -> "Failure":
        return Failure(stage=self.stage, code=self.kind.value, message=self.message)


class DecodeError(AttestationError):
    """Raised when report or certificate table bytes cannot be interpreted"""
    stage = "decode"


class ChainError(AttestationError):
    """Raised when the ARK > ASK > VCEK chain cannot be trusted"""
    stage = "chain"

    def __init__(self, kind: ChainErrorKind, level: CertRole, message: str = ""):
        super().__init__(kind, message)
        self.level = level

    def __str__(self) -> str:
        return f"{self.kind.value}({self.level.value}): {self.message}"

    def to_failure(self) -> "Failure":
        return Failure(
            stage=self.stage,
            code=self.kind.value,
            message=self.message,
            level=self.level,
        )


class VerifyError(AttestationError):
    """Raised when the report signature does not verify under the VCEK"""
    stage = "signature"


# =============================================================================
# Verdict
# =============================================================================

class ViolationKind(str, Enum):
    TCB_BINDING_MISMATCH = "tcb-binding-mismatch"
    CHIP_ID_BINDING_MISMATCH = "chip-id-binding-mismatch"
    CHIP_ID_NOT_MASKED = "chip-id-not-masked"
    TCB_BELOW_FLOOR = "tcb-below-floor"
    MEASUREMENT_MISMATCH = "measurement-mismatch"
    REPORT_DATA_MISMATCH = "report-data-mismatch"
    POLICY_BIT_MISMATCH = "policy-bit-mismatch"
    ABI_VERSION_BELOW_FLOOR = "abi-version-below-floor"
    GUEST_SVN_BELOW_FLOOR = "guest-svn-below-floor"
    FIRMWARE_BUILD_BELOW_FLOOR = "firmware-build-below-floor"
    FIRMWARE_VERSION_BELOW_FLOOR = "firmware-version-below-floor"
    HOST_DATA_MISMATCH = "host-data-mismatch"
    IMAGE_ID_MISMATCH = "image-id-mismatch"
    FAMILY_ID_MISMATCH = "family-id-mismatch"
    VMPL_MISMATCH = "vmpl-mismatch"
    PLATFORM_INFO_MISMATCH = "platform-info-mismatch"
    PROVISIONAL_FIRMWARE = "provisional-firmware"


@dataclass(frozen=True)
class Violation:
    """A single failed policy check, with both sides rendered for diagnostics"""
    kind: ViolationKind
    field: str
    expected: str
    actual: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.field} expected {self.expected}, got {self.actual}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "field": self.field,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True)
class Failure:
    """Value form of a decode, chain, or signature error"""
    stage: str
    code: str
    message: str
    level: Optional[CertRole] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "code": self.code,
            "level": self.level.value if self.level is not None else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class Verdict:
    """
    Result of one verification call.

    A verdict is valid only when provenance was established (no failure)
    and every policy check passed (no violations). ``trust_mode`` is set
    once the chain has been accepted; ``diagnostics`` records anything a
    caller must know about the strength of the result.
    """
    violations: Tuple[Violation, ...] = ()
    failure: Optional[Failure] = None
    trust_mode: Optional[TrustMode] = None
    diagnostics: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return self.failure is None and not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations],
            "failure": self.failure.to_dict() if self.failure is not None else None,
            "trust_mode": self.trust_mode.value if self.trust_mode is not None else None,
            "diagnostics": list(self.diagnostics),
        }
