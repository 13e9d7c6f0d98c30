"""
SEV-SNP attestation report structures and binary codec.

Layout follows the ATTESTATION_REPORT structure of the AMD SEV-SNP firmware
ABI (report versions 2, 3 and 5). All multi-byte integers are little-endian.
"""

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Optional, Tuple

from .types import DecodeError, DecodeErrorKind

POLICY_RESERVED_1_BIT = 17
REPORT_SIZE = 0x4A0  # 1184 bytes
SIGNATURE_OFFSET = 0x2A0
ECDSA_RS_SIZE = 72
ECDSA_P384_SHA384_SIGNATURE_SIZE = ECDSA_RS_SIZE + ECDSA_RS_SIZE
SIGNATURE_REGION_SIZE = REPORT_SIZE - SIGNATURE_OFFSET

SIGNATURE_ALGO_ECDSA_P384_SHA384 = 1

MIN_REPORT_VERSION = 2
MAX_REPORT_VERSION = 5

REPORT_DATA_SIZE = 64
MEASUREMENT_SIZE = 48
HOST_DATA_SIZE = 32
FAMILY_ID_SIZE = 16
IMAGE_ID_SIZE = 16
CHIP_ID_SIZE = 64

ZEN3ZEN4_FAMILY = 0x19
ZEN5_FAMILY     = 0x1A
MILAN_MODEL     = 0 | 1
GENOA_MODEL     = (1 << 4) | 1
TURIN_MODEL     = 2


class ReportSigner(IntEnum):
    VcekReportSigner = 0
    # VlekReportSigner is the SIGNING_KEY value for if the VLEK signed the attestation report.
    VlekReportSigner = 1
    endorseReserved2 = 2
    endorseReserved3 = 3
    endorseReserved4 = 4
    endorseReserved5 = 5
    endorseReserved6 = 6
    # NoneReportSigner is the SIGNING_KEY value for if the attestation report is not signed.
    NoneReportSigner = 7


class PolicyBit(IntEnum):
    """Single-bit flags of the guest POLICY field"""
    SMT = 16
    RESERVED_1 = POLICY_RESERVED_1_BIT
    MIGRATE_MA = 18
    DEBUG = 19
    SINGLE_SOCKET = 20
    CXL_ALLOWED = 21
    MEM_AES256_XTS = 22
    RAPL_DIS = 23
    CIPHERTEXT_HIDING_DRAM = 24
    PAGE_SWAP_DISABLE = 25


@dataclass(frozen=True)
class SignerInfo:
    """Signing circumstances for the attestation report."""
    # SigningKey represents kind of key by which a report was signed.
    signing_key: ReportSigner
    # MaskChipKey is true if the host chose to enable CHIP_ID masking, to cause the report's CHIP_ID
    # to be all zeros.
    mask_chip_key: bool
    # AuthorKeyEn is true if the VM is launched with an IDBLOCK that includes an author key.
    author_key_en: bool

    @classmethod
    def from_int(cls, value: int) -> "SignerInfo":
        return cls(
            signing_key=ReportSigner((value >> 2) & 7),
            mask_chip_key=(value & 2) != 0,
            author_key_en=(value & 1) != 0,
        )


@dataclass(frozen=True)
class TCBParts:
    """Represents the decomposed parts of a TCB version"""
    ucode_spl: int
    snp_spl: int
    tee_spl: int
    bl_spl: int

    def __str__(self) -> str:
        """Return a human-friendly string with all component SPL values."""
        # Print fields in order starting with the least-significant component (bl_spl)
        return (
            "TCBParts("
            f"bl_spl=0x{self.bl_spl:02x}, "
            f"tee_spl=0x{self.tee_spl:02x}, "
            f"snp_spl=0x{self.snp_spl:02x}, "
            f"ucode_spl=0x{self.ucode_spl:02x})"
        )

    @classmethod
    def from_int(cls, tcb: int) -> "TCBParts":
        """Build a TCBParts instance from a 64-bit packed TCB value."""
        return cls(
            ucode_spl=((tcb >> 56) & 0xff),
            snp_spl=((tcb >> 48) & 0xff),
            tee_spl=((tcb >> 8) & 0xff),
            bl_spl=((tcb >> 0) & 0xff),
        )

    def to_int(self) -> int:
        """Pack the components back into the 64-bit TCB_VERSION layout."""
        return (
            (self.ucode_spl & 0xff) << 56
            | (self.snp_spl & 0xff) << 48
            | (self.tee_spl & 0xff) << 8
            | (self.bl_spl & 0xff)
        )

    def meets_minimum(self, minimum: "TCBParts") -> bool:
        """Check if this TCB meets minimum requirements (component-wise)."""
        return (
            self.bl_spl >= minimum.bl_spl and
            self.tee_spl >= minimum.tee_spl and
            self.snp_spl >= minimum.snp_spl and
            self.ucode_spl >= minimum.ucode_spl
        )


@dataclass(frozen=True)
class SnpPlatformInfo:
    """Decoded view of the 64-bit PLATFORM_INFO field."""

    smt_enabled: bool
    tsme_enabled: bool
    ecc_enabled: bool
    rapl_disabled: bool
    ciphertext_hiding_dram_enabled: bool
    alias_check_complete: bool
    tio_enabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPlatformInfo":
        return cls(
            smt_enabled=bool(value & (1 << 0)),
            tsme_enabled=bool(value & (1 << 1)),
            ecc_enabled=bool(value & (1 << 2)),
            rapl_disabled=bool(value & (1 << 3)),
            ciphertext_hiding_dram_enabled=bool(value & (1 << 4)),
            alias_check_complete=bool(value & (1 << 5)),
            tio_enabled=bool(value & (1 << 7))
        )

    def __str__(self) -> str:
        return (
            "SnpPlatformInfo("
            f"SMTEnabled={self.smt_enabled}, "
            f"TSMEEnabled={self.tsme_enabled}, "
            f"ECCEnabled={self.ecc_enabled}, "
            f"RAPLDisabled={self.rapl_disabled}, "
            f"CiphertextHidingDRAMEnabled={self.ciphertext_hiding_dram_enabled}, "
            f"AliasCheckComplete={self.alias_check_complete}, "
            f"TIOEnabled={self.tio_enabled})"
        )


@dataclass(frozen=True)
class SnpPolicy:
    """Decoded view of the 64-bit POLICY field (bits 0-25)."""

    abi_minor: int
    abi_major: int
    smt: bool
    migrate_ma: bool
    debug: bool
    single_socket: bool
    cxl_allowed: bool
    mem_aes256_xts: bool
    rapl_dis: bool
    ciphertext_hiding_dram: bool
    page_swap_disabled: bool

    def __str__(self) -> str:
        return (
            "SnpPolicy("
            f"ABIMajor={self.abi_major}, ABIMinor={self.abi_minor}, "
            f"SMT={self.smt}, MigrateMA={self.migrate_ma}, Debug={self.debug}, "
            f"SingleSocket={self.single_socket}, CXLAllowed={self.cxl_allowed}, "
            f"MemAES256XTS={self.mem_aes256_xts}, RAPLDis={self.rapl_dis}, "
            f"CipherTextHidingDRAM={self.ciphertext_hiding_dram}, PageSwapDisabled={self.page_swap_disabled})"
        )

    @classmethod
    def from_int(cls, value: int) -> "SnpPolicy":
        """Parse the guest policy bit-field following the AMD SEV-SNP ABI."""
        return cls(
            abi_minor=value & 0xFF,
            abi_major=(value >> 8) & 0xFF,
            smt=bool(value & (1 << PolicyBit.SMT)),
            migrate_ma=bool(value & (1 << PolicyBit.MIGRATE_MA)),
            debug=bool(value & (1 << PolicyBit.DEBUG)),
            single_socket=bool(value & (1 << PolicyBit.SINGLE_SOCKET)),
            cxl_allowed=bool(value & (1 << PolicyBit.CXL_ALLOWED)),
            mem_aes256_xts=bool(value & (1 << PolicyBit.MEM_AES256_XTS)),
            rapl_dis=bool(value & (1 << PolicyBit.RAPL_DIS)),
            ciphertext_hiding_dram=bool(value & (1 << PolicyBit.CIPHERTEXT_HIDING_DRAM)),
            page_swap_disabled=bool(value & (1 << PolicyBit.PAGE_SWAP_DISABLE)),
        )


@dataclass(frozen=True)
class AttestationReport:
    """
    SEV-SNP attestation report.

    Instances are immutable. ``from_bytes`` rejects any report whose reserved
    fields are not zero, so ``to_bytes`` reproduces the exact input bytes of
    every report it accepted; the signed region is derived from that encoding.
    """
    version: int  # 2 for revision 1.55, 3 for revision 1.56, 5 for revision 1.58
    guest_svn: int
    policy: int
    family_id: bytes  # 16 bytes
    image_id: bytes   # 16 bytes
    vmpl: int
    signature_algo: int
    current_tcb: int
    platform_info: int
    signer_info: int  # AuthorKeyEn, MaskChipKey, SigningKey
    report_data: bytes  # 64 bytes
    measurement: bytes  # 48 bytes
    host_data: bytes   # 32 bytes
    id_key_digest: bytes  # 48 bytes
    author_key_digest: bytes  # 48 bytes
    report_id: bytes   # 32 bytes
    report_id_ma: bytes  # 32 bytes
    reported_tcb: int
    chip_id: bytes  # 64 bytes
    committed_tcb: int
    current_build: int
    current_minor: int
    current_major: int
    committed_build: int
    committed_minor: int
    committed_major: int
    launch_tcb: int
    signature: bytes  # 512 bytes, R || S || reserved
    # CPUID fields are only present from report version 3
    family: Optional[int] = None
    model: Optional[int] = None
    stepping: Optional[int] = None
    # Mitigation vectors are only present from report version 5
    launch_mit_vector: int = 0
    current_mit_vector: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "AttestationReport":
        """
        Parse an attestation report from raw bytes in SEV SNP ABI format.

        Args:
            data: Raw bytes of the attestation report
        Returns:
            AttestationReport containing parsed data
        Raises:
            DecodeError: If the buffer cannot be interpreted as a report
        """
        if len(data) < REPORT_SIZE:
            raise DecodeError(
                DecodeErrorKind.TOO_SHORT,
                f"Array size is 0x{len(data):x}, an SEV-SNP attestation report size is 0x{REPORT_SIZE:x}",
            )
        if len(data) > REPORT_SIZE:
            raise DecodeError(
                DecodeErrorKind.TOO_LONG,
                f"Array size is 0x{len(data):x}, an SEV-SNP attestation report size is 0x{REPORT_SIZE:x}",
            )
        data = bytes(data)

        version = _u32(data, 0x00)
        if not MIN_REPORT_VERSION <= version <= MAX_REPORT_VERSION:
            raise DecodeError(DecodeErrorKind.BAD_VERSION, f"Unknown report version {version}")

        policy = _u64(data, 0x08)
        # Check reserved bit must be 1
        if not (policy & (1 << POLICY_RESERVED_1_BIT)):
            raise DecodeError(
                DecodeErrorKind.MALFORMED_FIELD,
                f"policy[{POLICY_RESERVED_1_BIT}] is reserved, must be 1, got 0",
            )
        # Check bits 63-26 must be zero
        if policy >> 26:
            raise DecodeError(DecodeErrorKind.MALFORMED_FIELD, "policy bits 63-26 must be zero")

        current_tcb = _u64(data, 0x38)
        mbz64(current_tcb, "current_tcb", 47, 16)

        signer_info = _u32(data, 0x48)
        mbz64(signer_info, "signer_info", 31, 5)
        mbz(data, 0x4C, 0x50)

        reported_tcb = _u64(data, 0x180)
        mbz64(reported_tcb, "reported_tcb", 47, 16)

        family = model = stepping = None
        mbz_lo = 0x188
        if version >= 3:
            family = data[0x188]
            model = data[0x189]
            stepping = data[0x18A]
            mbz_lo = 0x18B
        mbz(data, mbz_lo, 0x1A0)

        committed_tcb = _u64(data, 0x1E0)
        mbz64(committed_tcb, "committed_tcb", 47, 16)
        mbz(data, 0x1EB, 0x1EC)
        mbz(data, 0x1EF, 0x1F0)

        launch_tcb = _u64(data, 0x1F0)
        mbz64(launch_tcb, "launch_tcb", 47, 16)

        launch_mit_vector = current_mit_vector = 0
        reserved_lo = 0x1F8
        if version >= 5:
            launch_mit_vector = _u64(data, 0x1F8)
            current_mit_vector = _u64(data, 0x200)
            reserved_lo = 0x208
        mbz(data, reserved_lo, SIGNATURE_OFFSET)

        signature_algo = _u32(data, 0x34)
        if signature_algo == SIGNATURE_ALGO_ECDSA_P384_SHA384:
            mbz(data, SIGNATURE_OFFSET + ECDSA_P384_SHA384_SIGNATURE_SIZE, REPORT_SIZE)

        return cls(
            version=version,
            guest_svn=_u32(data, 0x04),
            policy=policy,
            family_id=data[0x10:0x20],
            image_id=data[0x20:0x30],
            vmpl=_u32(data, 0x30),
            signature_algo=signature_algo,
            current_tcb=current_tcb,
            platform_info=_u64(data, 0x40),
            signer_info=signer_info,
            report_data=data[0x50:0x90],
            measurement=data[0x90:0xC0],
            host_data=data[0xC0:0xE0],
            id_key_digest=data[0xE0:0x110],
            author_key_digest=data[0x110:0x140],
            report_id=data[0x140:0x160],
            report_id_ma=data[0x160:0x180],
            reported_tcb=reported_tcb,
            chip_id=data[0x1A0:0x1E0],
            committed_tcb=committed_tcb,
            current_build=data[0x1E8],
            current_minor=data[0x1E9],
            current_major=data[0x1EA],
            committed_build=data[0x1EC],
            committed_minor=data[0x1ED],
            committed_major=data[0x1EE],
            launch_tcb=launch_tcb,
            signature=data[SIGNATURE_OFFSET:REPORT_SIZE],
            family=family,
            model=model,
            stepping=stepping,
            launch_mit_vector=launch_mit_vector,
            current_mit_vector=current_mit_vector,
        )

    def to_bytes(self) -> bytes:
        """Serialize the report back into its 0x4A0-byte wire format."""
        return self.signed_data + _fixed(self.signature, SIGNATURE_REGION_SIZE, "signature")

    @property
    def signed_data(self) -> bytes:
        """Bytes 0x000-0x2A0, the region covered by the report signature."""
        buf = bytearray(SIGNATURE_OFFSET)
        buf[0x00:0x04] = self.version.to_bytes(4, "little")
        buf[0x04:0x08] = self.guest_svn.to_bytes(4, "little")
        buf[0x08:0x10] = self.policy.to_bytes(8, "little")
        buf[0x10:0x20] = _fixed(self.family_id, FAMILY_ID_SIZE, "family_id")
        buf[0x20:0x30] = _fixed(self.image_id, IMAGE_ID_SIZE, "image_id")
        buf[0x30:0x34] = self.vmpl.to_bytes(4, "little")
        buf[0x34:0x38] = self.signature_algo.to_bytes(4, "little")
        buf[0x38:0x40] = self.current_tcb.to_bytes(8, "little")
        buf[0x40:0x48] = self.platform_info.to_bytes(8, "little")
        buf[0x48:0x4C] = self.signer_info.to_bytes(4, "little")
        buf[0x50:0x90] = _fixed(self.report_data, REPORT_DATA_SIZE, "report_data")
        buf[0x90:0xC0] = _fixed(self.measurement, MEASUREMENT_SIZE, "measurement")
        buf[0xC0:0xE0] = _fixed(self.host_data, HOST_DATA_SIZE, "host_data")
        buf[0xE0:0x110] = _fixed(self.id_key_digest, 48, "id_key_digest")
        buf[0x110:0x140] = _fixed(self.author_key_digest, 48, "author_key_digest")
        buf[0x140:0x160] = _fixed(self.report_id, 32, "report_id")
        buf[0x160:0x180] = _fixed(self.report_id_ma, 32, "report_id_ma")
        buf[0x180:0x188] = self.reported_tcb.to_bytes(8, "little")
        if self.version >= 3:
            buf[0x188] = self.family or 0
            buf[0x189] = self.model or 0
            buf[0x18A] = self.stepping or 0
        buf[0x1A0:0x1E0] = _fixed(self.chip_id, CHIP_ID_SIZE, "chip_id")
        buf[0x1E0:0x1E8] = self.committed_tcb.to_bytes(8, "little")
        buf[0x1E8] = self.current_build
        buf[0x1E9] = self.current_minor
        buf[0x1EA] = self.current_major
        buf[0x1EC] = self.committed_build
        buf[0x1ED] = self.committed_minor
        buf[0x1EE] = self.committed_major
        buf[0x1F0:0x1F8] = self.launch_tcb.to_bytes(8, "little")
        if self.version >= 5:
            buf[0x1F8:0x200] = self.launch_mit_vector.to_bytes(8, "little")
            buf[0x200:0x208] = self.current_mit_vector.to_bytes(8, "little")
        return bytes(buf)

    @property
    def signature_rs(self) -> Tuple[bytes, bytes]:
        """Raw little-endian R and S components (72 bytes each)."""
        return (
            self.signature[0:ECDSA_RS_SIZE],
            self.signature[ECDSA_RS_SIZE:ECDSA_P384_SHA384_SIGNATURE_SIZE],
        )

    @property
    def policy_parsed(self) -> SnpPolicy:
        return SnpPolicy.from_int(self.policy)

    @property
    def platform_info_parsed(self) -> SnpPlatformInfo:
        return SnpPlatformInfo.from_int(self.platform_info)

    @property
    def signer_info_parsed(self) -> SignerInfo:
        return SignerInfo.from_int(self.signer_info)

    @property
    def product_name(self) -> str:
        # Version 2 reports carry no CPUID; they were only produced by Genoa-era firmware
        if self.family is None:
            return "Genoa"
        if self.family == ZEN3ZEN4_FAMILY:
            if self.model == MILAN_MODEL:
                return "Milan"
            if self.model == GENOA_MODEL:
                return "Genoa"
        elif self.family == ZEN5_FAMILY:
            if self.model == TURIN_MODEL:
                return "Turin"
        return "Unknown"


def parse_report(data: bytes) -> AttestationReport:
    """Decode a raw SEV-SNP report, raising DecodeError on malformed input."""
    return AttestationReport.from_bytes(data)


def encode_report(report: AttestationReport) -> bytes:
    return report.to_bytes()


def with_signature(report: AttestationReport, r: int, s: int) -> AttestationReport:
    """Return a copy of *report* carrying the ECDSA signature (r, s)."""
    raw = r.to_bytes(ECDSA_RS_SIZE, "little") + s.to_bytes(ECDSA_RS_SIZE, "little")
    return replace(report, signature=raw.ljust(SIGNATURE_REGION_SIZE, b"\x00"))

## HELPER FUNCTIONS

def _u32(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 4], byteorder="little")


def _u64(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 8], byteorder="little")


def _fixed(value: bytes, size: int, name: str) -> bytes:
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")
    return value


def find_non_zero(data: bytes, lo: int, hi: int) -> int:
    """
    Returns the first index which is not zero, otherwise returns hi.

    Args:
        data: Bytes object to search through
        lo: Starting index (inclusive)
        hi: Ending index (exclusive)
    Returns:
        Index of first non-zero byte, or hi if all bytes are zero
    """
    for i in range(lo, hi):
        if data[i] != 0:
            return i
    return hi


def mbz(data: bytes, lo: int, hi: int) -> None:
    """
    Checks if a range of bytes is all zeros.

    Raises:
        DecodeError: If any byte in the range is non-zero
    """
    if find_non_zero(data, lo, hi) != hi:
        raise DecodeError(
            DecodeErrorKind.MALFORMED_FIELD,
            f"mbz range [0x{lo:x}:0x{hi:x}] not all zero: {data[lo:hi].hex()}",
        )


def mbz64(data: int, base: str, hi: int, lo: int) -> None:
    """
    Checks if a range of bits in an integer is all zeros.

    Args:
        data: Integer to check
        base: String identifier for error message
        hi: Highest bit position (inclusive)
        lo: Lowest bit position (inclusive)
    Raises:
        DecodeError: If any bit in the range is non-zero
    """
    mask = (1 << (hi - lo + 1)) - 1
    if (data >> lo) & mask:
        raise DecodeError(
            DecodeErrorKind.MALFORMED_FIELD,
            f"mbz range {base}[0x{lo:x}:0x{hi:x}] not all zero: {hex(data)}",
        )
