"""
AMD Key Distribution Service (KDS) client.

Fetches the VCEK for a report and the ARK/ASK pair for a product line, and
assembles them into a certificate table accepted by ``verify``. The
verification core never imports this module; callers that already hold the
certificates do not need it.
"""

import logging
import os
from typing import Callable, Optional, Tuple

import platformdirs
import requests
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .abi_sevsnp import AttestationReport
from .attestation import FetchKey, required_fetch_key
from .cert_table import ARK_GUID, ASK_GUID, VCEK_GUID, encode_cert_table, load_certificate
from .types import CertRole, DecodeError

logger = logging.getLogger(__name__)

KDS_BASE_URL = "https://kdsintf.amd.com/vcek/v1"
KDS_TIMEOUT = 10

# Product lines whose VCEK URL uses the full 64-byte chip ID and the four SPL parameters
SUPPORTED_PRODUCTS = ("Milan", "Genoa")

Fetch = Callable[[str], bytes]


class KdsError(Exception):
    """Raised when certificates cannot be obtained from AMD KDS"""
    pass


def vcek_url(key: FetchKey, base_url: str = KDS_BASE_URL) -> str:
    """Generate the VCEK certificate URL based on the product name, chip ID, and reported TCB"""
    _check_product(key.product_name)
    if not any(key.chip_id):
        raise KdsError("report CHIP_ID is masked, the VCEK cannot be requested by chip ID")
    parts = key.tcb
    return (
        f"{base_url}/{key.product_name}/{key.chip_id.hex()}"
        f"?blSPL={parts.bl_spl}&teeSPL={parts.tee_spl}&snpSPL={parts.snp_spl}&ucodeSPL={parts.ucode_spl}"
    )


def cert_chain_url(product_name: str, base_url: str = KDS_BASE_URL) -> str:
    _check_product(product_name)
    return f"{base_url}/{product_name}/cert_chain"


def http_fetch(url: str) -> bytes:
    """Default fetch capability: GET *url* and return the response body"""
    try:
        response = requests.get(url, timeout=KDS_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        raise KdsError(f"Failed to fetch {url}: {e}") from e
    return response.content


def fetch_vcek(
    key: FetchKey,
    fetch: Fetch = http_fetch,
    cache: bool = True,
    cache_dir: Optional[str] = None,
) -> x509.Certificate:
    """
    Fetch (or load from the on-disk cache) the VCEK certificate for *key*.

    Args:
        key: Chip ID, TCB and product the VCEK is keyed by
        fetch: Capability used on a cache miss
        cache: Whether to read and write the on-disk cache
        cache_dir: Cache location; defaults to the user cache directory

    Raises:
        KdsError: If the certificate cannot be fetched or parsed
    """
    url = vcek_url(key)
    cache_path = _vcek_cache_path(key, cache_dir) if cache else None

    # 1. Try the on-disk cache
    if cache_path is not None and os.path.isfile(cache_path):
        logger.debug("Loading VCEK from cache %s", cache_path)
        with open(cache_path, "rb") as fh:
            vcek_cert_data = fh.read()
    else:
        # 2. Cache miss -> fetch from the KDS endpoint
        logger.debug("Fetching VCEK from %s", url)
        vcek_cert_data = fetch(url)

    try:
        vcek = load_certificate(vcek_cert_data, CertRole.LEAF)
    except DecodeError as e:
        # Corrupted cache? Remove it so the next call fetches again
        if cache_path is not None and os.path.exists(cache_path):
            os.remove(cache_path)
        raise KdsError(f"Failed to parse VCEK certificate: {e}") from e

    if cache_path is not None and not os.path.isfile(cache_path):
        os.makedirs(os.path.dirname(cache_path), exist_ok=True)
        with open(cache_path, "wb") as fh:
            fh.write(vcek_cert_data)

    return vcek


def fetch_cert_chain(product_name: str, fetch: Fetch = http_fetch) -> Tuple[x509.Certificate, x509.Certificate]:
    """
    Fetch the ARK and ASK for a product line.

    KDS serves both as one PEM bundle, ASK first.

    Returns:
        (ark, ask)
    """
    url = cert_chain_url(product_name)
    logger.debug("Fetching certificate chain from %s", url)
    data = fetch(url)
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise KdsError(f"Failed to parse certificate chain from {url}: {e}") from e
    if len(certs) != 2:
        raise KdsError(f"Expected ASK and ARK in certificate chain, got {len(certs)} certificates")
    ask, ark = certs
    return ark, ask


def fetch_cert_table(
    report: AttestationReport,
    fetch: Fetch = http_fetch,
    cache: bool = True,
    cache_dir: Optional[str] = None,
) -> bytes:
    """Fetch ARK, ASK and VCEK for *report* and encode them as a certificate table"""
    key = required_fetch_key(report)
    ark, ask = fetch_cert_chain(key.product_name, fetch)
    vcek = fetch_vcek(key, fetch=fetch, cache=cache, cache_dir=cache_dir)
    return encode_cert_table([
        (ARK_GUID, ark.public_bytes(serialization.Encoding.DER)),
        (ASK_GUID, ask.public_bytes(serialization.Encoding.DER)),
        (VCEK_GUID, vcek.public_bytes(serialization.Encoding.DER)),
    ])


def _check_product(product_name: str) -> None:
    if product_name not in SUPPORTED_PRODUCTS:
        raise KdsError(f"KDS lookups are only supported for {', '.join(SUPPORTED_PRODUCTS)}, got {product_name}")


def _vcek_cache_path(key: FetchKey, cache_dir: Optional[str] = None) -> str:
    """Build a deterministic filename for a given (product, chip_id, tcb)."""
    if cache_dir is None:
        cache_dir = platformdirs.user_cache_dir("sev-attest", "sev-attest")
    filename = f"VCEK_{key.product_name}_{key.chip_id.hex()}_{key.tcb.to_int():016x}.der"
    return os.path.join(cache_dir, filename)
