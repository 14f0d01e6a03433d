import struct

import pytest

from uncflow.cpuid import cpuid, mbm_scaling_factor
from uncflow.errors import HardwareError


def _device(path, leaf, subleaf, regs):
    with open(path, "wb") as handle:
        handle.seek((subleaf << 32) | leaf)
        handle.write(struct.pack("<4I", *regs))
    return path


def test_cpuid_leaf_zero(tmp_path):
    regs = (0x16, 0x756E6547, 0x6C65746E, 0x49656E69)
    device = _device(tmp_path / "cpuid", 0, 0, regs)
    assert cpuid(0, 0, device) == regs


def test_cpuid_uses_leaf_as_offset(tmp_path):
    regs = (1, 2, 3, 4)
    device = _device(tmp_path / "cpuid", 1, 0, regs)
    assert cpuid(1, 0, device) == regs


def test_cpuid_missing_device_gives_zeros(tmp_path):
    assert cpuid(0, 0, tmp_path / "absent") == (0, 0, 0, 0)


def test_cpuid_short_read(tmp_path):
    device = tmp_path / "cpuid"
    device.write_bytes(b"\x01\x02")
    with pytest.raises(HardwareError):
        cpuid(0, 0, device)


def test_mbm_scaling_factor_without_device(tmp_path):
    assert mbm_scaling_factor(tmp_path / "absent") == 1