from .abi_sevsnp import (
    AttestationReport,
    PolicyBit,
    TCBParts,
    encode_report,
    parse_report,
)
from .attestation import (
    FetchKey,
    default_policy,
    required_fetch_key,
    verify,
    verify_chain_and_report,
)
from .cert_table import CertTable, encode_cert_table, parse_cert_table
from .types import (
    AttestationError,
    ChainError,
    DecodeError,
    Failure,
    TrustMode,
    Verdict,
    VerifyError,
    Violation,
    ViolationKind,
)
from .validate import ExpectedPolicy, check_policy
from .verify import (
    CertChain,
    TrustAnchors,
    TrustedLeafKey,
    validate_chain,
    verify_report_signature,
)

__all__ = [
    'AttestationReport',
    'PolicyBit',
    'TCBParts',
    'encode_report',
    'parse_report',
    'FetchKey',
    'default_policy',
    'required_fetch_key',
    'verify',
    'verify_chain_and_report',
    'CertTable',
    'encode_cert_table',
    'parse_cert_table',
    'AttestationError',
    'ChainError',
    'DecodeError',
    'Failure',
    'TrustMode',
    'Verdict',
    'VerifyError',
    'Violation',
    'ViolationKind',
    'ExpectedPolicy',
    'check_policy',
    'CertChain',
    'TrustAnchors',
    'TrustedLeafKey',
    'validate_chain',
    'verify_report_signature',
]
