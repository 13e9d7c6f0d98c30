import logging
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .abi_sevsnp import (
    AttestationReport,
    CHIP_ID_SIZE,
    FAMILY_ID_SIZE,
    HOST_DATA_SIZE,
    IMAGE_ID_SIZE,
    MEASUREMENT_SIZE,
    PolicyBit,
    REPORT_DATA_SIZE,
    SnpPlatformInfo,
    TCBParts,
)
from .types import Violation, ViolationKind
from .verify import TrustedLeafKey

logger = logging.getLogger(__name__)

# A debuggable or migratable guest cannot keep its memory confidential
DEFAULT_REQUIRED_POLICY_BITS: Mapping[PolicyBit, bool] = MappingProxyType({
    PolicyBit.DEBUG: False,
    PolicyBit.MIGRATE_MA: False,
})


def _default_policy_bits() -> Dict[PolicyBit, bool]:
    return dict(DEFAULT_REQUIRED_POLICY_BITS)


@dataclass(frozen=True)
class ExpectedPolicy:
    """
    Caller expectations for an SEV-SNP attestation report.

    Any attribute left as ``None`` will not be checked, with two exceptions:
    ``accepted_measurements`` is always checked (an empty set accepts no
    measurement), and committed firmware must equal current firmware unless
    ``permit_provisional_firmware`` is set.
    """
    accepted_measurements: FrozenSet[bytes] = frozenset()   # 48 bytes each
    min_tcb: Optional[TCBParts] = None
    required_report_data: Optional[bytes] = None            # 64 bytes
    # Read-only after construction and left out of the hash
    required_policy_bits: Mapping[PolicyBit, bool] = field(default_factory=_default_policy_bits, hash=False)

    # Policy / version constraints
    min_launch_tcb: Optional[TCBParts] = None
    minimum_guest_svn: Optional[int] = None
    minimum_build: Optional[int] = None                     # Firmware build (uint8)
    minimum_version: Optional[int] = None                   # Firmware API version, major << 8 | minor
    minimum_abi_version: Optional[Tuple[int, int]] = None   # Guest policy ABI (major, minor)

    # Field equality checks
    host_data: Optional[bytes] = None                       # 32 bytes
    image_id: Optional[bytes] = None                        # 16 bytes
    family_id: Optional[bytes] = None                       # 16 bytes
    vmpl: Optional[int] = None                              # Expected VMPL (0-3)

    # Misc
    permit_provisional_firmware: bool = False
    platform_info: Optional[SnpPlatformInfo] = None

    def __post_init__(self):
        measurements = frozenset(bytes(m) for m in self.accepted_measurements)
        for m in measurements:
            _check_length("accepted_measurements", m, MEASUREMENT_SIZE)
        object.__setattr__(self, "accepted_measurements", measurements)

        for name, size in (
            ("required_report_data", REPORT_DATA_SIZE),
            ("host_data", HOST_DATA_SIZE),
            ("image_id", IMAGE_ID_SIZE),
            ("family_id", FAMILY_ID_SIZE),
        ):
            value = getattr(self, name)
            if value is not None:
                value = bytes(value)
                _check_length(name, value, size)
                object.__setattr__(self, name, value)

        bits = {}
        for bit, required in self.required_policy_bits.items():
            try:
                bits[PolicyBit(bit)] = bool(required)
            except ValueError:
                raise ValueError(f"{bit!r} is not a guest policy flag bit") from None
        object.__setattr__(self, "required_policy_bits", MappingProxyType(bits))

        if self.vmpl is not None and not 0 <= self.vmpl <= 3:
            raise ValueError(f"vmpl must be between 0 and 3, got {self.vmpl}")
        if self.minimum_build is not None and not 0 <= self.minimum_build <= 0xFF:
            raise ValueError(f"minimum_build must fit in a byte, got {self.minimum_build}")
        if self.minimum_version is not None and not 0 <= self.minimum_version <= 0xFFFF:
            raise ValueError(f"minimum_version must fit in 16 bits, got {self.minimum_version}")
        if self.minimum_guest_svn is not None and self.minimum_guest_svn < 0:
            raise ValueError(f"minimum_guest_svn must not be negative, got {self.minimum_guest_svn}")
        if self.minimum_abi_version is not None:
            major, minor = self.minimum_abi_version
            if not (0 <= major <= 0xFF and 0 <= minor <= 0xFF):
                raise ValueError(f"minimum_abi_version components must fit in a byte, got {self.minimum_abi_version}")
            object.__setattr__(self, "minimum_abi_version", (major, minor))
        for name in ("min_tcb", "min_launch_tcb"):
            tcb = getattr(self, name)
            if tcb is not None and not all(
                0 <= v <= 0xFF for v in (tcb.bl_spl, tcb.tee_spl, tcb.snp_spl, tcb.ucode_spl)
            ):
                raise ValueError(f"{name} components must fit in a byte, got {tcb}")

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ExpectedPolicy":
        """
        Build an ExpectedPolicy from JSON-style configuration.

        Byte fields are hex strings, TCB floors are either packed integers or
        mappings of SPL names, and policy bits are keyed by flag name.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ValueError(f"Unknown policy options: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for name, value in options.items():
            if value is None:
                kwargs[name] = None
            elif name == "accepted_measurements":
                kwargs[name] = frozenset(_from_hex(name, m) for m in value)
            elif name in ("required_report_data", "host_data", "image_id", "family_id"):
                kwargs[name] = _from_hex(name, value)
            elif name in ("min_tcb", "min_launch_tcb"):
                kwargs[name] = _tcb_from_config(name, value)
            elif name == "required_policy_bits":
                kwargs[name] = {_policy_bit_from_config(k): bool(v) for k, v in value.items()}
            elif name == "minimum_abi_version":
                kwargs[name] = _abi_from_config(value)
            elif name == "platform_info":
                kwargs[name] = _platform_info_from_config(value)
            else:
                kwargs[name] = value
        return cls(**kwargs)


def check_policy(report: AttestationReport, leaf: TrustedLeafKey, expected: ExpectedPolicy) -> List[Violation]:
    """
    Check a signature-verified report against *expected* and the VCEK bindings.

    Every check runs; the returned list holds one Violation per failing
    check, in a stable order. An empty list means the report is acceptable.
    """
    violations: List[Violation] = []

    def fail(kind: ViolationKind, name: str, want: Any, got: Any) -> None:
        violations.append(Violation(kind=kind, field=name, expected=str(want), actual=str(got)))

    reported_tcb = TCBParts.from_int(report.reported_tcb)

    # VCEK-specific TCB check
    if leaf.tcb != reported_tcb:
        fail(ViolationKind.TCB_BINDING_MISMATCH, "reported_tcb", leaf.tcb, reported_tcb)

    # VCEK-specific CHIP_ID <-> HWID equality check
    if report.signer_info_parsed.mask_chip_key:
        if any(report.chip_id):
            fail(ViolationKind.CHIP_ID_NOT_MASKED, "chip_id", bytes(CHIP_ID_SIZE).hex(), report.chip_id.hex())
    elif leaf.hwid != report.chip_id:
        fail(ViolationKind.CHIP_ID_BINDING_MISMATCH, "chip_id", leaf.hwid.hex(), report.chip_id.hex())

    # TCB requirements
    if expected.min_tcb is not None:
        for name in ("reported_tcb", "current_tcb", "committed_tcb"):
            parts = TCBParts.from_int(getattr(report, name))
            if not parts.meets_minimum(expected.min_tcb):
                fail(ViolationKind.TCB_BELOW_FLOOR, name, f">= {expected.min_tcb}", parts)

    if expected.min_launch_tcb is not None:
        launch_tcb = TCBParts.from_int(report.launch_tcb)
        if not launch_tcb.meets_minimum(expected.min_launch_tcb):
            fail(ViolationKind.TCB_BELOW_FLOOR, "launch_tcb", f">= {expected.min_launch_tcb}", launch_tcb)

    if report.measurement not in expected.accepted_measurements:
        accepted = ", ".join(sorted(m.hex() for m in expected.accepted_measurements))
        fail(ViolationKind.MEASUREMENT_MISMATCH, "measurement", f"one of [{accepted}]", report.measurement.hex())

    if expected.required_report_data is not None and report.report_data != expected.required_report_data:
        fail(
            ViolationKind.REPORT_DATA_MISMATCH,
            "report_data",
            expected.required_report_data.hex(),
            report.report_data.hex(),
        )

    # Policy constraints
    for bit, required in sorted(expected.required_policy_bits.items()):
        actual = bool(report.policy & (1 << bit))
        if actual != required:
            fail(ViolationKind.POLICY_BIT_MISMATCH, f"policy.{bit.name}", required, actual)

    if expected.minimum_abi_version is not None:
        policy = report.policy_parsed
        if (policy.abi_major, policy.abi_minor) < expected.minimum_abi_version:
            fail(
                ViolationKind.ABI_VERSION_BELOW_FLOOR,
                "policy.abi",
                ">= {}.{}".format(*expected.minimum_abi_version),
                f"{policy.abi_major}.{policy.abi_minor}",
            )

    if expected.minimum_guest_svn is not None and report.guest_svn < expected.minimum_guest_svn:
        fail(ViolationKind.GUEST_SVN_BELOW_FLOOR, "guest_svn", f">= {expected.minimum_guest_svn}", report.guest_svn)

    if expected.minimum_build is not None:
        for name in ("current_build", "committed_build"):
            build = getattr(report, name)
            if build < expected.minimum_build:
                fail(ViolationKind.FIRMWARE_BUILD_BELOW_FLOOR, name, f">= {expected.minimum_build}", build)

    if expected.minimum_version is not None:
        want = f">= {expected.minimum_version >> 8}.{expected.minimum_version & 0xff}"
        # Combine major/minor into single version number for comparison
        for prefix in ("current", "committed"):
            major = getattr(report, f"{prefix}_major")
            minor = getattr(report, f"{prefix}_minor")
            if (major << 8) | minor < expected.minimum_version:
                fail(ViolationKind.FIRMWARE_VERSION_BELOW_FLOOR, f"{prefix}_version", want, f"{major}.{minor}")

    # Field equality checks
    for name, kind in (
        ("host_data", ViolationKind.HOST_DATA_MISMATCH),
        ("image_id", ViolationKind.IMAGE_ID_MISMATCH),
        ("family_id", ViolationKind.FAMILY_ID_MISMATCH),
    ):
        want = getattr(expected, name)
        got = getattr(report, name)
        if want is not None and got != want:
            fail(kind, name, want.hex(), got.hex())

    if expected.vmpl is not None and report.vmpl != expected.vmpl:
        fail(ViolationKind.VMPL_MISMATCH, "vmpl", expected.vmpl, report.vmpl)

    if expected.platform_info is not None:
        for name, want, got in _platform_info_mismatches(report.platform_info_parsed, expected.platform_info):
            fail(ViolationKind.PLATFORM_INFO_MISMATCH, f"platform_info.{name}", want, got)

    # Unless provisional firmware is permitted, committed and current values must be equal
    if not expected.permit_provisional_firmware:
        for name in ("build", "minor", "major", "tcb"):
            committed = getattr(report, f"committed_{name}")
            current = getattr(report, f"current_{name}")
            if committed != current:
                fail(ViolationKind.PROVISIONAL_FIRMWARE, f"committed_{name}", current, committed)

    logger.debug("Policy check found %d violation(s)", len(violations))
    return violations


def _platform_info_mismatches(report_info: SnpPlatformInfo, required: SnpPlatformInfo):
    """
    Yield (flag, expected, actual) for every platform-info requirement the
    report does not meet.

    SMT is a capability: the report may only have it when *required* allows
    it. Every other flag is a protection: when *required* sets it, the
    report must have it.
    """
    if report_info.smt_enabled and not required.smt_enabled:
        yield "smt_enabled", False, True

    for name in (
        "ecc_enabled",
        "tsme_enabled",
        "rapl_disabled",
        "ciphertext_hiding_dram_enabled",
        "alias_check_complete",
        "tio_enabled",
    ):
        if getattr(required, name) and not getattr(report_info, name):
            yield name, True, False


## CONFIGURATION HELPERS

def _check_length(name: str, value: bytes, size: int) -> None:
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")


def _from_hex(name: str, value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} is not a hex string: {value!r}") from e


def _tcb_from_config(name: str, value: Any) -> TCBParts:
    if isinstance(value, TCBParts):
        return value
    if isinstance(value, int):
        return TCBParts.from_int(value)
    if isinstance(value, Mapping):
        unknown = set(value) - {"bl_spl", "tee_spl", "snp_spl", "ucode_spl"}
        if unknown:
            raise ValueError(f"Unknown {name} components: {sorted(unknown)}")
        return TCBParts(
            bl_spl=int(value.get("bl_spl", 0)),
            tee_spl=int(value.get("tee_spl", 0)),
            snp_spl=int(value.get("snp_spl", 0)),
            ucode_spl=int(value.get("ucode_spl", 0)),
        )
    raise ValueError(f"{name} must be an integer or a mapping of SPL values, got {value!r}")


def _policy_bit_from_config(key: Any) -> PolicyBit:
    if isinstance(key, str) and not key.isdigit():
        try:
            return PolicyBit[key.upper()]
        except KeyError:
            raise ValueError(f"Unknown policy bit {key!r}") from None
    return PolicyBit(int(key))


def _abi_from_config(value: Any) -> Tuple[int, int]:
    if isinstance(value, str):
        major, _, minor = value.partition(".")
        return int(major), int(minor or 0)
    major, minor = value
    return int(major), int(minor)


def _platform_info_from_config(value: Any) -> SnpPlatformInfo:
    if isinstance(value, SnpPlatformInfo):
        return value
    if isinstance(value, int):
        return SnpPlatformInfo.from_int(value)
    names = {f.name for f in fields(SnpPlatformInfo)}
    unknown = set(value) - names
    if unknown:
        raise ValueError(f"Unknown platform_info flags: {sorted(unknown)}")
    return SnpPlatformInfo(**{name: bool(value.get(name, False)) for name in names})
