"""Choice of the node component power source for this machine."""

from __future__ import annotations

import logging
import platform

from kepwatt.components import PowerSource

logger = logging.getLogger(__name__)


def select_power_source(
    sysfs: PowerSource,
    msr: PowerSource,
    apm_xgene: PowerSource,
    hmc: PowerSource,
    estimate: PowerSource,
    msr_enabled: bool = False,
    arch: str | None = None,
) -> PowerSource:
    """Return the first usable source in order of preference for the architecture."""
    arch = platform.machine() if arch is None else arch
    if arch == "s390x":
        if hmc.is_system_collection_supported():
            logger.info("use hmc to obtain power")
            return hmc
        logger.info("Not able to obtain power, use estimate method")
        return estimate
    if sysfs.is_system_collection_supported():
        logger.info("use sysfs to obtain power")
        return sysfs
    if msr_enabled and msr.is_system_collection_supported():
        logger.info("use MSR to obtain power")
        return msr
    if apm_xgene.is_system_collection_supported():
        logger.info("use Ampere Xgene sysfs to obtain power")
        return apm_xgene
    logger.info("Not able to obtain power, use estimate method")
    return estimate