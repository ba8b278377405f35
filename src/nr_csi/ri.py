"""
Downlink Rank Indicator Selection

Evaluates every admissible rank with the PMI selector and picks the rank
with the largest sum of per-layer SINR, counting only layers at or above
0 dB. A new rank must beat the current best by more than a fixed margin,
so near-ties resolve to the lower rank.
"""

import dataclasses
import logging
from typing import Tuple

import numpy as np

from .config import (
    NOISE_VARIANCE_FLOOR,
    CarrierConfig,
    CSIReportConfig,
    CSIRSConfig,
    as_channel_array,
    clip_noise_variance,
    validate_channel,
    validate_report_config,
)
from .pmi import MeasurementREs, PMISet, nan_mean, select_pmi_validated
from .subband import pmi_subband_info

logger = logging.getLogger(__name__)

# Minimum improvement in summed SINR to move to another rank
RANK_SWITCH_MARGIN = 0.1

# Layers below this linear SINR (0 dB) do not count towards a rank's score
MIN_LAYER_SINR = 1.0


def select_ri(
    carrier: CarrierConfig,
    csirs: CSIRSConfig,
    report_config: CSIReportConfig,
    H: np.ndarray,
    nvar: float = NOISE_VARIANCE_FLOOR,
) -> Tuple[float, PMISet]:
    """
    Select the rank indicator and the PMI reported with it

    PRG bundling is not used for rank selection; the PMI is evaluated with
    the configured PMI mode.

    Args:
        carrier: Carrier configuration
        csirs: CSI-RS configuration
        report_config: CSI report configuration (ri_restriction applies)
        H: Channel estimate (NSizeGrid*12, symbols per slot, Rx, ports)
        nvar: Noise variance estimate

    Returns:
        (RI, PMISet); RI is NaN when no rank can be evaluated
    """
    report_config = dataclasses.replace(report_config, prg_size=None)
    num_ports, _ = csirs.validate()
    report = validate_report_config(carrier, num_ports, report_config)
    H = as_channel_array(H)
    nvar = clip_noise_variance(nvar)
    res = MeasurementREs.locate(carrier, csirs, report)
    sb_info = pmi_subband_info(report)

    num_rx = H.shape[2]
    if report.is_single_panel:
        max_rank = min(num_rx, num_ports)
    else:
        max_rank = min(num_rx, 4)
    valid_ranks = [
        rank for rank, allowed in enumerate(report.ri_restriction, start=1)
        if allowed and rank <= max_rank
    ]

    if not valid_ranks or res.count == 0:
        logger.warning(
            f"No rank can be evaluated (valid ranks {valid_ranks}, "
            f"{res.count} CSI-RS REs); reporting NaN RI"
        )
        return np.nan, PMISet.unavailable(not report.is_single_panel, sb_info.num_subbands)

    validate_channel(H, carrier, num_ports, 1)

    best_sinr = -np.inf
    ri = np.nan
    best_pmi = None
    pmi_set = None
    for rank in valid_ranks:
        pmi_set, info = select_pmi_validated(carrier, report, rank, H, nvar, res)
        total = np.nan
        if pmi_set.is_valid:
            subband_sinr = np.full((sb_info.num_subbands, rank), np.nan)
            for sb in range(sb_info.num_subbands):
                indices = pmi_set.indices(sb)
                if indices is not None:
                    subband_sinr[sb] = info.layer_sinr_per_subband(sb, indices) * rank
            layer_sinr = nan_mean(subband_sinr, axis=0)
            total = float(np.sum(layer_sinr[layer_sinr >= MIN_LAYER_SINR]))
        logger.debug(f"Rank {rank}: summed layer SINR {total}")

        if total > best_sinr + RANK_SWITCH_MARGIN:
            best_sinr = total
            ri = rank
            best_pmi = pmi_set

    if best_pmi is None:
        logger.warning("SINR unavailable for every rank; reporting NaN RI")
        return np.nan, pmi_set

    logger.debug(f"Selected RI {ri} (summed SINR {best_sinr:.4f})")
    return ri, best_pmi
