import pytest

from kepwatt.components import PowerDummy, PowerEstimate, PowerHMC
from kepwatt.power import select_power_source


def sources(sysfs=False, msr=False, apm=False, hmc=False):
    return {
        "sysfs": PowerDummy(sysfs),
        "msr": PowerDummy(msr),
        "apm_xgene": PowerDummy(apm),
        "hmc": PowerDummy(hmc),
        "estimate": PowerEstimate(cpu_cores=1),
    }


@pytest.mark.parametrize(
    "flags, msr_enabled, expected",
    [
        ({"sysfs": True, "msr": True, "apm": True}, True, "sysfs"),
        ({"msr": True, "apm": True}, True, "msr"),
        ({"msr": True, "apm": True}, False, "apm_xgene"),
        ({"msr": True}, False, "estimate"),
        ({}, True, "estimate"),
    ],
)
def test_selection_order(flags, msr_enabled, expected):
    available = sources(**flags)
    chosen = select_power_source(**available, msr_enabled=msr_enabled, arch="x86_64")
    assert chosen is available[expected]


def test_s390x_prefers_hmc():
    available = sources(sysfs=True, hmc=True)
    assert select_power_source(**available, arch="s390x") is available["hmc"]


def test_s390x_falls_back_to_estimate():
    available = sources(sysfs=True)
    available["hmc"] = PowerHMC()
    assert select_power_source(**available, arch="s390x") is available["estimate"]