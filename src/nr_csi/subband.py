"""
Subband Partitioning for CSI Reporting

Splits a bandwidth part into PMI/CQI reporting subbands (or PRGs):
- Wideband: a single subband spanning the BWP
- Subband: granularity-aligned subbands with irregular first/last sizes
  determined by the BWP start in common resource blocks

References:
- 3GPP TS 38.214: Section 5.2.1.4 (Reporting configurations)
- 3GPP TS 38.214: Section 5.1.2.3 (Physical resource block bundling)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .config import (
    MIN_SUBBAND_BWP_SIZE,
    ConfigurationError,
    ReportingMode,
    ValidatedReport,
    parse_enum,
)

logger = logging.getLogger(__name__)


@dataclass
class SubbandInfo:
    """Subband partition of a BWP"""
    num_subbands: int
    subband_sizes: List[int] = field(default_factory=list)   # In RBs

    @property
    def starts(self) -> np.ndarray:
        """BWP-relative first RB of each subband"""
        return np.concatenate(([0], np.cumsum(self.subband_sizes)[:-1])).astype(int)

    def rb_slices(self) -> List[slice]:
        """RB slice of each subband"""
        return [
            slice(int(start), int(start + size))
            for start, size in zip(self.starts, self.subband_sizes)
        ]

    def subcarrier_slices(self) -> List[slice]:
        """Subcarrier slice of each subband (12 subcarriers per RB)"""
        return [slice(s.start * 12, s.stop * 12) for s in self.rb_slices()]

    def to_dict(self) -> dict:
        return {
            "num_subbands": self.num_subbands,
            "subband_sizes": [int(s) for s in self.subband_sizes],
        }


def partition_subbands(
    mode,
    bwp_start: int,
    bwp_size: int,
    granularity: Optional[int],
    ignore_bwp_size: bool = False,
) -> SubbandInfo:
    """
    Partition a BWP into reporting subbands

    Args:
        mode: ReportingMode (or its name)
        bwp_start: BWP start in common resource blocks
        bwp_size: BWP size in RBs
        granularity: Subband size or PRG size in RBs
        ignore_bwp_size: Do not collapse BWPs below 24 RBs (PRG bundling)

    Returns:
        SubbandInfo whose sizes sum to bwp_size
    """
    mode = parse_enum(ReportingMode, mode, "reporting mode")
    if mode is ReportingMode.WIDEBAND or (
        not ignore_bwp_size and bwp_size < MIN_SUBBAND_BWP_SIZE
    ):
        return SubbandInfo(num_subbands=1, subband_sizes=[bwp_size])

    if granularity is None or granularity <= 0:
        raise ConfigurationError(
            f"Subband partitioning requires a positive granularity, got {granularity}"
        )

    first = granularity - bwp_start % granularity
    last = (bwp_start + bwp_size) % granularity
    if last == 0:
        last = granularity

    # BWP contained in a single granularity-aligned block
    if first >= bwp_size:
        return SubbandInfo(num_subbands=1, subband_sizes=[bwp_size])

    num_subbands = (bwp_size - (first + last)) // granularity + 2
    sizes = [granularity] * num_subbands
    sizes[0] = first
    sizes[-1] = last
    logger.debug(
        f"BWP ({bwp_start}, {bwp_size}) split into {num_subbands} subbands of {granularity} RBs"
    )
    return SubbandInfo(num_subbands=num_subbands, subband_sizes=sizes)


def pmi_subband_info(report: ValidatedReport) -> SubbandInfo:
    """PMI reporting subbands; a configured PRG size overrides the PMI mode"""
    if report.prg_size is not None:
        return partition_subbands(
            ReportingMode.SUBBAND,
            report.n_start_bwp,
            report.n_size_bwp,
            report.prg_size,
            ignore_bwp_size=True,
        )
    return partition_subbands(
        report.pmi_mode, report.n_start_bwp, report.n_size_bwp, report.subband_size
    )


def cqi_subband_info(report: ValidatedReport) -> SubbandInfo:
    """CQI reporting subbands"""
    return partition_subbands(
        report.cqi_mode, report.n_start_bwp, report.n_size_bwp, report.subband_size
    )


def prg_to_subband_ranges(
    cqi_info: SubbandInfo, prg_info: SubbandInfo
) -> List[Tuple[int, int]]:
    """
    Map PRGs onto CQI subbands

    Walks the PRG sizes, closing a CQI subband whenever the PRGs seen so
    far exactly fill it.

    Returns:
        One (first_prg, stop_prg) half-open range per CQI subband
    """
    starts = [0] * (cqi_info.num_subbands + 1)
    index = 0
    remaining = cqi_info.subband_sizes[0]
    for prg_idx, prg_size in enumerate(prg_info.subband_sizes):
        if remaining - prg_size == 0 and index < cqi_info.num_subbands - 1:
            index += 1
            remaining = cqi_info.subband_sizes[index]
            starts[index] = prg_idx + 1
        else:
            remaining -= prg_size
    starts[index + 1] = prg_info.num_subbands
    return [(starts[i], starts[i + 1]) for i in range(index + 1)]
