import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from sev_attest.abi_sevsnp import PolicyBit, SnpPlatformInfo, TCBParts
from sev_attest.types import TrustMode, ViolationKind
from sev_attest.validate import (
    DEFAULT_REQUIRED_POLICY_BITS,
    ExpectedPolicy,
    check_policy,
)
from sev_attest.verify import TrustedLeafKey
from sev_attest.vcek_extensions import VcekExtensions

from snp_fixtures import HWID, MEASUREMENT, REPORT_DATA, TCB, make_report


@pytest.fixture(scope="module")
def vcek_public_key():
    return ec.generate_private_key(ec.SECP384R1()).public_key()


def _leaf(public_key, tcb=TCB, hwid=HWID) -> TrustedLeafKey:
    return TrustedLeafKey(
        public_key=public_key,
        extensions=VcekExtensions(struct_version=1, product_name="Genoa", tcb=tcb, hwid=hwid),
        trust_mode=TrustMode.PINNED,
    )


def _policy(**overrides) -> ExpectedPolicy:
    options = dict(accepted_measurements={MEASUREMENT})
    options.update(overrides)
    return ExpectedPolicy(**options)


def _kinds(violations):
    return [v.kind for v in violations]


class TestExpectedPolicy:
    """Test the ExpectedPolicy dataclass"""

    def test_default_values(self):
        """Test that ExpectedPolicy has correct default values"""
        options = ExpectedPolicy()

        assert options.accepted_measurements == frozenset()
        assert options.min_tcb is None
        assert options.required_report_data is None
        assert options.required_policy_bits == DEFAULT_REQUIRED_POLICY_BITS
        assert options.required_policy_bits == {PolicyBit.DEBUG: False, PolicyBit.MIGRATE_MA: False}

        # Policy / version constraints
        assert options.min_launch_tcb is None
        assert options.minimum_guest_svn is None
        assert options.minimum_build is None
        assert options.minimum_version is None
        assert options.minimum_abi_version is None

        # Field equality checks
        assert options.host_data is None
        assert options.image_id is None
        assert options.family_id is None
        assert options.vmpl is None

        # Misc
        assert options.permit_provisional_firmware == False
        assert options.platform_info is None

    def test_defaults_are_not_shared(self):
        a = ExpectedPolicy()
        b = ExpectedPolicy()
        assert a.required_policy_bits is not b.required_policy_bits
        assert a.required_policy_bits is not DEFAULT_REQUIRED_POLICY_BITS

    def test_policy_bits_are_read_only(self):
        options = ExpectedPolicy()
        with pytest.raises(TypeError):
            options.required_policy_bits[PolicyBit.DEBUG] = True
        with pytest.raises(TypeError):
            DEFAULT_REQUIRED_POLICY_BITS[PolicyBit.DEBUG] = True
        assert options.required_policy_bits[PolicyBit.DEBUG] is False

    def test_hashable(self):
        a = ExpectedPolicy(accepted_measurements={MEASUREMENT}, min_tcb=TCB)
        b = ExpectedPolicy(accepted_measurements={MEASUREMENT}, min_tcb=TCB)
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b, ExpectedPolicy()}) == 2

    @pytest.mark.parametrize("field,value", [
        ("accepted_measurements", {b"\x00" * 47}),
        ("required_report_data", b"\x00" * 32),
        ("host_data", b"\x00" * 33),
        ("image_id", b"\x00" * 15),
        ("family_id", b""),
    ])
    def test_bad_lengths(self, field, value):
        """Test that wrongly sized byte fields are rejected at construction"""
        with pytest.raises(ValueError, match=field):
            ExpectedPolicy(**{field: value})

    def test_bad_vmpl(self):
        with pytest.raises(ValueError, match="vmpl"):
            ExpectedPolicy(vmpl=4)

    def test_bad_policy_bit(self):
        with pytest.raises(ValueError, match="not a guest policy flag"):
            ExpectedPolicy(required_policy_bits={3: True})

    def test_from_dict(self):
        options = ExpectedPolicy.from_dict({
            "accepted_measurements": [MEASUREMENT.hex()],
            "min_tcb": {"bl_spl": 7, "snp_spl": 14, "ucode_spl": 72},
            "required_report_data": REPORT_DATA.hex(),
            "required_policy_bits": {"debug": False, "SMT": True, "20": True},
            "minimum_abi_version": "1.51",
            "minimum_build": 21,
            "vmpl": 0,
            "platform_info": {"smt_enabled": True},
        })
        assert options.accepted_measurements == frozenset({MEASUREMENT})
        assert options.min_tcb == TCBParts(bl_spl=7, tee_spl=0, snp_spl=14, ucode_spl=72)
        assert options.required_report_data == REPORT_DATA
        assert options.required_policy_bits == {
            PolicyBit.DEBUG: False,
            PolicyBit.SMT: True,
            PolicyBit.SINGLE_SOCKET: True,
        }
        assert options.minimum_abi_version == (1, 51)
        assert options.minimum_build == 21
        assert options.platform_info.smt_enabled is True
        assert options.platform_info.ecc_enabled is False

    def test_from_dict_packed_tcb(self):
        options = ExpectedPolicy.from_dict({"min_tcb": TCB.to_int()})
        assert options.min_tcb == TCB

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown policy options"):
            ExpectedPolicy.from_dict({"measurement": "00"})

    def test_from_dict_rejects_bad_hex(self):
        with pytest.raises(ValueError, match="host_data is not a hex string"):
            ExpectedPolicy.from_dict({"host_data": "zz"})

    def test_from_dict_rejects_unknown_policy_bit(self):
        with pytest.raises(ValueError, match="Unknown policy bit"):
            ExpectedPolicy.from_dict({"required_policy_bits": {"turbo": True}})


class TestBindings:
    """Test the VCEK TCB and chip ID bindings"""

    def test_matching_report_passes(self, vcek_public_key):
        assert check_policy(make_report(), _leaf(vcek_public_key), _policy()) == []

    def test_tcb_binding_mismatch(self, vcek_public_key):
        """Test that a VCEK for a different TCB is flagged"""
        vcek_tcb = TCBParts(bl_spl=7, tee_spl=0, snp_spl=15, ucode_spl=72)
        violations = check_policy(make_report(), _leaf(vcek_public_key, tcb=vcek_tcb), _policy())
        assert _kinds(violations) == [ViolationKind.TCB_BINDING_MISMATCH]
        assert violations[0].field == "reported_tcb"
        assert "snp_spl=0x0f" in violations[0].expected
        assert "snp_spl=0x0e" in violations[0].actual

    def test_chip_id_binding_mismatch(self, vcek_public_key):
        leaf = _leaf(vcek_public_key, hwid=b"\x01" * 64)
        assert _kinds(check_policy(make_report(), leaf, _policy())) == [ViolationKind.CHIP_ID_BINDING_MISMATCH]

    def test_masked_chip_id(self, vcek_public_key):
        """Test that a masked chip ID skips the HWID binding"""
        report = make_report(signer_info=2, chip_id=bytes(64))
        assert check_policy(report, _leaf(vcek_public_key), _policy()) == []

    def test_masked_chip_id_not_zero(self, vcek_public_key):
        report = make_report(signer_info=2)
        assert _kinds(check_policy(report, _leaf(vcek_public_key), _policy())) == [ViolationKind.CHIP_ID_NOT_MASKED]


class TestPolicyChecks:
    """Test check_policy against each expectation"""

    def test_measurement_not_accepted(self, vcek_public_key):
        violations = check_policy(make_report(), _leaf(vcek_public_key), _policy(accepted_measurements={b"\x01" * 48}))
        assert _kinds(violations) == [ViolationKind.MEASUREMENT_MISMATCH]
        assert violations[0].actual == MEASUREMENT.hex()
        assert ("01" * 48) in violations[0].expected

    def test_empty_measurement_set_accepts_nothing(self, vcek_public_key):
        violations = check_policy(make_report(), _leaf(vcek_public_key), ExpectedPolicy())
        assert _kinds(violations) == [ViolationKind.MEASUREMENT_MISMATCH]

    def test_any_accepted_measurement(self, vcek_public_key):
        policy = _policy(accepted_measurements={b"\x01" * 48, MEASUREMENT})
        assert check_policy(make_report(), _leaf(vcek_public_key), policy) == []

    def test_report_data(self, vcek_public_key):
        leaf = _leaf(vcek_public_key)
        assert check_policy(make_report(), leaf, _policy(required_report_data=REPORT_DATA)) == []
        violations = check_policy(make_report(), leaf, _policy(required_report_data=b"\x00" * 64))
        assert _kinds(violations) == [ViolationKind.REPORT_DATA_MISMATCH]

    def test_tcb_below_floor(self, vcek_public_key):
        """Test that every TCB field below the floor is reported"""
        floor = TCBParts(bl_spl=7, tee_spl=0, snp_spl=15, ucode_spl=72)
        violations = check_policy(make_report(), _leaf(vcek_public_key), _policy(min_tcb=floor))
        assert _kinds(violations) == [ViolationKind.TCB_BELOW_FLOOR] * 3
        assert [v.field for v in violations] == ["reported_tcb", "current_tcb", "committed_tcb"]

    def test_tcb_at_floor(self, vcek_public_key):
        assert check_policy(make_report(), _leaf(vcek_public_key), _policy(min_tcb=TCB)) == []

    def test_launch_tcb_below_floor(self, vcek_public_key):
        report = make_report(launch_tcb=TCBParts(bl_spl=6, tee_spl=0, snp_spl=14, ucode_spl=72).to_int())
        violations = check_policy(report, _leaf(vcek_public_key), _policy(min_launch_tcb=TCB))
        assert _kinds(violations) == [ViolationKind.TCB_BELOW_FLOOR]
        assert violations[0].field == "launch_tcb"

    def test_debug_policy_rejected_by_default(self, vcek_public_key):
        report = make_report(policy=(1 << 17) | (1 << PolicyBit.DEBUG) | (1 << PolicyBit.MIGRATE_MA))
        violations = check_policy(report, _leaf(vcek_public_key), _policy())
        assert _kinds(violations) == [ViolationKind.POLICY_BIT_MISMATCH] * 2
        assert [v.field for v in violations] == ["policy.MIGRATE_MA", "policy.DEBUG"]

    def test_required_policy_bit_set(self, vcek_public_key):
        policy = _policy(required_policy_bits={PolicyBit.SINGLE_SOCKET: True, PolicyBit.SMT: False})
        violations = check_policy(make_report(), _leaf(vcek_public_key), policy)
        assert [v.field for v in violations] == ["policy.SMT", "policy.SINGLE_SOCKET"]

    def test_abi_version_floor(self, vcek_public_key):
        report = make_report(policy=(1 << 17) | 0x0133)  # ABI 1.51
        leaf = _leaf(vcek_public_key)
        assert check_policy(report, leaf, _policy(minimum_abi_version=(1, 51))) == []
        violations = check_policy(report, leaf, _policy(minimum_abi_version=(1, 52)))
        assert _kinds(violations) == [ViolationKind.ABI_VERSION_BELOW_FLOOR]
        assert violations[0].actual == "1.51"

    def test_guest_svn_floor(self, vcek_public_key):
        violations = check_policy(make_report(guest_svn=1), _leaf(vcek_public_key), _policy(minimum_guest_svn=2))
        assert _kinds(violations) == [ViolationKind.GUEST_SVN_BELOW_FLOOR]

    def test_firmware_build_floor(self, vcek_public_key):
        violations = check_policy(make_report(), _leaf(vcek_public_key), _policy(minimum_build=22))
        assert _kinds(violations) == [ViolationKind.FIRMWARE_BUILD_BELOW_FLOOR] * 2

    def test_firmware_version_floor(self, vcek_public_key):
        leaf = _leaf(vcek_public_key)
        assert check_policy(make_report(), leaf, _policy(minimum_version=(1 << 8) | 55)) == []
        violations = check_policy(make_report(), leaf, _policy(minimum_version=(1 << 8) | 56))
        assert _kinds(violations) == [ViolationKind.FIRMWARE_VERSION_BELOW_FLOOR] * 2
        assert violations[0].expected == ">= 1.56"
        assert violations[0].actual == "1.55"

    def test_field_equality(self, vcek_public_key):
        policy = _policy(host_data=b"\x01" * 32, image_id=b"\x02" * 16, family_id=b"\x03" * 16)
        violations = check_policy(make_report(), _leaf(vcek_public_key), policy)
        assert _kinds(violations) == [
            ViolationKind.HOST_DATA_MISMATCH,
            ViolationKind.IMAGE_ID_MISMATCH,
            ViolationKind.FAMILY_ID_MISMATCH,
        ]

    def test_vmpl(self, vcek_public_key):
        violations = check_policy(make_report(vmpl=1), _leaf(vcek_public_key), _policy(vmpl=0))
        assert _kinds(violations) == [ViolationKind.VMPL_MISMATCH]
        assert (violations[0].expected, violations[0].actual) == ("0", "1")


class TestPlatformInfo:
    """Test platform info requirements"""

    def _required(self, **flags):
        values = dict(
            smt_enabled=False, tsme_enabled=False, ecc_enabled=False,
            rapl_disabled=False, ciphertext_hiding_dram_enabled=False,
            alias_check_complete=False, tio_enabled=False,
        )
        values.update(flags)
        return SnpPlatformInfo(**values)

    def test_exact_match(self, vcek_public_key):
        policy = _policy(platform_info=self._required(smt_enabled=True))
        assert check_policy(make_report(platform_info=1), _leaf(vcek_public_key), policy) == []

    def test_unauthorized_smt(self, vcek_public_key):
        violations = check_policy(make_report(platform_info=1), _leaf(vcek_public_key), _policy(platform_info=self._required()))
        assert _kinds(violations) == [ViolationKind.PLATFORM_INFO_MISMATCH]
        assert violations[0].field == "platform_info.smt_enabled"

    def test_missing_required_features(self, vcek_public_key):
        policy = _policy(platform_info=self._required(ecc_enabled=True, tsme_enabled=True))
        violations = check_policy(make_report(platform_info=0), _leaf(vcek_public_key), policy)
        assert [v.field for v in violations] == ["platform_info.ecc_enabled", "platform_info.tsme_enabled"]

    def test_extra_features_allowed(self, vcek_public_key):
        """Test that protections beyond the requirement are accepted"""
        report = make_report(platform_info=0b0111110)
        assert check_policy(report, _leaf(vcek_public_key), _policy(platform_info=self._required())) == []


class TestProvisionalFirmware:
    """Test committed vs current firmware checks"""

    def test_provisional_firmware_rejected(self, vcek_public_key):
        report = make_report(current_build=22, current_minor=56)
        violations = check_policy(report, _leaf(vcek_public_key), _policy())
        assert _kinds(violations) == [ViolationKind.PROVISIONAL_FIRMWARE] * 2
        assert [v.field for v in violations] == ["committed_build", "committed_minor"]

    def test_provisional_firmware_permitted(self, vcek_public_key):
        report = make_report(current_build=22)
        policy = _policy(permit_provisional_firmware=True)
        assert check_policy(report, _leaf(vcek_public_key), policy) == []


class TestViolationAccumulation:
    """Test that every failing check is reported"""

    def test_all_violations_collected(self, vcek_public_key):
        report = make_report(
            vmpl=2,
            guest_svn=0,
            policy=(1 << 17) | (1 << PolicyBit.DEBUG),
            current_build=20,
        )
        leaf = _leaf(vcek_public_key, tcb=TCBParts(bl_spl=8, tee_spl=0, snp_spl=14, ucode_spl=72))
        policy = _policy(
            accepted_measurements={b"\x00" * 48},
            required_report_data=b"\x00" * 64,
            minimum_guest_svn=1,
            vmpl=0,
        )
        assert _kinds(check_policy(report, leaf, policy)) == [
            ViolationKind.TCB_BINDING_MISMATCH,
            ViolationKind.MEASUREMENT_MISMATCH,
            ViolationKind.REPORT_DATA_MISMATCH,
            ViolationKind.POLICY_BIT_MISMATCH,
            ViolationKind.GUEST_SVN_BELOW_FLOOR,
            ViolationKind.VMPL_MISMATCH,
            ViolationKind.PROVISIONAL_FIRMWARE,
        ]

    def test_violation_rendering(self, vcek_public_key):
        violation = check_policy(make_report(vmpl=1), _leaf(vcek_public_key), _policy(vmpl=0))[0]
        assert str(violation) == "vmpl-mismatch: vmpl expected 0, got 1"
        assert violation.to_dict() == {
            "kind": "vmpl-mismatch",
            "field": "vmpl",
            "expected": "0",
            "actual": "1",
        }
