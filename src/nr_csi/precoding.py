"""
PRG Precoding

Transmit-side use of a CSI report:
- Per-PRG precoder arrays built from the reported PMI (one matrix per
  precoding resource block group, shared by the PRGs of a subband)
- PRG-bundled precoding of layer symbols onto antenna ports, with PRGs
  aligned to common resource block 0

References:
- 3GPP TS 38.214: Section 5.1.2.3 (Physical resource block bundling)
- 3GPP TS 38.211: Section 7.3.1.4 (Antenna port mapping)
"""

import logging
import math
from typing import Sequence, Tuple

import numpy as np

from .codebook import Codebook
from .config import SUBCARRIERS_PER_RB, ConfigurationError
from .pmi import PMISet

logger = logging.getLogger(__name__)


def prg_set(num_rb: int, n_start_grid: int, num_prg: int) -> np.ndarray:
    """
    0-based PRG number of every RB in a carrier

    The bundle size is ceil((NRB + NStartGrid) / NPRG) so that PRG
    boundaries fall on multiples of the bundle size counted from CRB 0.
    """
    bundle = math.ceil((num_rb + n_start_grid) / num_prg)
    return (n_start_grid + np.arange(num_rb)) // bundle


def prg_precode(
    grid_size: Sequence[int],
    n_start_grid: int,
    port_symbols: np.ndarray,
    port_indices: np.ndarray,
    F: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Precode layer symbols with a different precoder per PRG

    Args:
        grid_size: Carrier grid size (K, L[, ...]); K is 12 * NRB
        n_start_grid: Carrier start in common resource blocks
        port_symbols: Layer symbols (NRE, layers)
        port_indices: 0-based linear indices of the symbols in a
            (K, L, layers) grid (C order); every row addresses the same
            RE on each layer
        F: Precoders (layers, ports, NPRG); a 2-D array is one wideband precoder

    Returns:
        (antenna_symbols, antenna_indices), both (NRE, ports); indices are
        0-based linear indices into a (K, L, ports) grid
    """
    F = np.asarray(F)
    if F.ndim == 2:
        F = F[:, :, np.newaxis]
    num_layers, num_ports, num_prg = F.shape
    K, L = int(grid_size[0]), int(grid_size[1])
    if K % SUBCARRIERS_PER_RB:
        raise ConfigurationError(f"Grid size {K} is not a whole number of resource blocks")

    symbols = np.asarray(port_symbols).reshape(-1, num_layers)
    indices = np.asarray(port_indices, dtype=int).reshape(-1, num_layers)
    if symbols.shape != indices.shape:
        raise ConfigurationError(
            f"Symbol array {symbols.shape} and index array {indices.shape} differ in shape"
        )

    k, l, _ = np.unravel_index(indices[:, 0], (K, L, num_layers))
    prg = prg_set(K // SUBCARRIERS_PER_RB, n_start_grid, num_prg)[k // SUBCARRIERS_PER_RB]

    antenna_symbols = np.zeros((symbols.shape[0], num_ports), dtype=complex)
    for g in range(num_prg):
        rows = prg == g
        if rows.any():
            antenna_symbols[rows] = symbols[rows] @ F[:, :, g]

    antenna_indices = np.ravel_multi_index(
        (k[:, np.newaxis], l[:, np.newaxis], np.arange(num_ports)[np.newaxis, :]),
        (K, L, num_ports),
    )
    logger.debug(f"Precoded {symbols.shape[0]} REs over {num_prg} PRG(s)")
    return antenna_symbols, antenna_indices


def precoders_from_pmi(
    codebook: Codebook,
    pmi_set: PMISet,
    num_rb: int,
    prg_size: int,
) -> np.ndarray:
    """
    Per-PRG precoders for a PDSCH allocation from a PMI report

    Subbands are spread evenly over the allocation (ceil(NRB / subbands)
    RBs each) and every PRG of a subband gets that subband's precoder.
    Subbands without a reported i2 get an all-zero precoder.

    Args:
        codebook: Codebook of the reported rank
        pmi_set: Reported PMI
        num_rb: Number of allocated RBs
        prg_size: Precoding granularity in RBs

    Returns:
        Array (layers, ports, NPRG) of transposed precoding matrices
    """
    if codebook.num_ports == 1:
        return np.ones((1, 1, 1), dtype=complex)
    if not pmi_set.is_valid:
        raise ConfigurationError("Cannot build precoders from an unavailable PMI")

    num_subbands = pmi_set.num_subbands
    subband_size = math.ceil(num_rb / num_subbands)
    num_prg = math.ceil(num_rb / prg_size)
    prg_per_subband = math.ceil(subband_size / prg_size)
    last_subband_rbs = num_rb - (num_subbands - 1) * subband_size
    prg_last_subband = math.ceil(last_subband_rbs / prg_size)

    F = np.zeros((codebook.num_layers, codebook.num_ports, num_prg), dtype=complex)
    for sb in range(num_subbands):
        count = prg_last_subband if sb == num_subbands - 1 else prg_per_subband
        first = sb * prg_per_subband
        stop = min(first + count, num_prg)
        indices = pmi_set.indices(sb)
        if indices is None:
            logger.warning(f"No i2 reported for subband {sb}; zero precoder used")
            continue
        F[:, :, first:stop] = codebook.precoder(indices).T[:, :, np.newaxis]
    return F
