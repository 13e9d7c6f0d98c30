"""
AMD SEV-SNP Attestation Orchestration Module.

This module provides the high-level entry point for AMD SEV-SNP attestation
verification. ``verify`` never raises: every failure, including malformed
input, comes back as data inside the returned Verdict.

Stages run in a fixed order:
1. Decode the report and the certificate table
2. Validate the ARK > ASK > VCEK chain
3. Verify the report signature with the VCEK key
4. Check the report against the expected policy

The first three stages short-circuit; policy violations are only collected
once provenance has been established, and are collected in full.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .abi_sevsnp import AttestationReport, SnpPlatformInfo, TCBParts, parse_report
from .cert_table import parse_cert_table
from .types import AttestationError, Failure, TrustMode, Verdict
from .validate import DEFAULT_REQUIRED_POLICY_BITS, ExpectedPolicy, check_policy
from .verify import CertChain, TrustAnchors, validate_chain, verify_report_signature

logger = logging.getLogger(__name__)

SELF_SIGNED_ONLY_DIAGNOSTIC = (
    "trust-mode self-signed-only: the root certificate was accepted on its "
    "self-signature alone, no pinned root fingerprint was configured"
)


# =============================================================================
# Orchestration Constants
# =============================================================================

# Minimum TCB requirements for AMD SEV-SNP
min_tcb = TCBParts(
    bl_spl=0x7,
    tee_spl=0,
    snp_spl=0xe,
    ucode_spl=0x48,
)


def default_policy(accepted_measurements: Iterable[bytes], report_data: Optional[bytes] = None) -> ExpectedPolicy:
    """
    Build an ExpectedPolicy with the recommended firmware floors for production guests.

    Args:
        accepted_measurements: Launch digests the guest may have
        report_data: Exact REPORT_DATA the guest must have bound, if any
    """
    return ExpectedPolicy(
        accepted_measurements=frozenset(accepted_measurements),
        min_tcb=min_tcb,
        required_report_data=report_data,
        required_policy_bits=dict(DEFAULT_REQUIRED_POLICY_BITS),
        min_launch_tcb=min_tcb,
        minimum_guest_svn=0,
        minimum_build=21,
        minimum_version=(1 << 8) | 55,  # 1.55
        permit_provisional_firmware=False,
        platform_info=SnpPlatformInfo(
            smt_enabled=True,
            tsme_enabled=False,
            ecc_enabled=False,
            rapl_disabled=False,
            ciphertext_hiding_dram_enabled=False,
            alias_check_complete=False,
            tio_enabled=False,
        ),
    )


@dataclass(frozen=True)
class FetchKey:
    """What a fetch collaborator must request from AMD KDS to obtain the VCEK for a report"""
    chip_id: bytes
    tcb: TCBParts
    product_name: str


def required_fetch_key(report: AttestationReport) -> FetchKey:
    """Returns the chip ID, reported TCB and product line the VCEK is keyed by"""
    return FetchKey(
        chip_id=report.chip_id,
        tcb=TCBParts.from_int(report.reported_tcb),
        product_name=report.product_name,
    )


# =============================================================================
# Main Entry Points
# =============================================================================

def verify(
    report_bytes: bytes,
    cert_bytes: bytes,
    expected: ExpectedPolicy,
    anchors: Optional[TrustAnchors] = None,
) -> Verdict:
    """
    Verify a raw SEV-SNP report against its certificate table and *expected*.

    Args:
        report_bytes: 0x4A0-byte attestation report
        cert_bytes: Extended-report certificate table holding ARK, ASK and VCEK
        expected: Caller expectations for the report contents
        anchors: Root pins; defaults to no pins and no unpinned roots

    Returns:
        Verdict; ``verdict.valid`` is True only if every stage passed
    """
    anchors = anchors if anchors is not None else TrustAnchors()

    logger.debug("Decoding report and certificate table")
    try:
        report = parse_report(report_bytes)
        chain = CertChain.from_table(parse_cert_table(cert_bytes))
    except AttestationError as e:
        return _failed(e.to_failure())
    except Exception as e:
        return _failed(_unexpected("decode", e))

    return verify_chain_and_report(report, chain, expected, anchors)


def verify_chain_and_report(
    report: AttestationReport,
    chain: CertChain,
    expected: ExpectedPolicy,
    anchors: Optional[TrustAnchors] = None,
) -> Verdict:
    """Run the chain, signature and policy stages on already-decoded inputs."""
    anchors = anchors if anchors is not None else TrustAnchors()

    logger.debug("Validating certificate chain")
    try:
        leaf = validate_chain(chain, anchors)
    except AttestationError as e:
        return _failed(e.to_failure())
    except Exception as e:
        return _failed(_unexpected("chain", e))

    diagnostics = ()
    if leaf.trust_mode == TrustMode.SELF_SIGNED_ONLY:
        diagnostics = (SELF_SIGNED_ONLY_DIAGNOSTIC,)

    logger.debug("Verifying report signature")
    try:
        verify_report_signature(report, leaf)
    except AttestationError as e:
        return _failed(e.to_failure(), leaf.trust_mode, diagnostics)
    except Exception as e:
        return _failed(_unexpected("signature", e), leaf.trust_mode, diagnostics)

    logger.debug("Checking report against expected policy")
    try:
        violations = check_policy(report, leaf, expected)
    except Exception as e:
        return _failed(_unexpected("policy", e), leaf.trust_mode, diagnostics)

    verdict = Verdict(violations=tuple(violations), trust_mode=leaf.trust_mode, diagnostics=diagnostics)
    if verdict.valid:
        logger.info("Attestation report verified (%s)", leaf.trust_mode.value)
    else:
        logger.info("Attestation report rejected: %s", "; ".join(str(v) for v in violations))
    return verdict


def _failed(failure: Failure, trust_mode: Optional[TrustMode] = None, diagnostics=()) -> Verdict:
    logger.info("Attestation failed at %s stage: %s: %s", failure.stage, failure.code, failure.message)
    return Verdict(failure=failure, trust_mode=trust_mode, diagnostics=diagnostics)


def _unexpected(stage: str, e: Exception) -> Failure:
    return Failure(stage=stage, code="internal-error", message=f"{type(e).__name__}: {e}")