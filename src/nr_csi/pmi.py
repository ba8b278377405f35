"""
Downlink PMI Selection for Type-1 Codebooks

Selects the precoding matrix indicator that maximises post-precoding SINR
over the CSI-RS resource elements of a BWP:
- Wideband search: total SINR over all REs, OFDM symbols and layers for
  every unrestricted codebook entry (rounded to 4 decimals, first maximum
  in index order wins)
- Subband refinement: i2 re-selected per subband/PRG with i1 fixed
- NaN reporting when no CSI-RS falls in the BWP, every entry is
  restricted, or a subband carries no CSI-RS

Indices are reported 1-based: i1 = [i11, i12, i13] (single-panel) or
[i11, i12, i13, i141, i142, i143] (multi-panel); i2 holds one value per
subband (single-panel) or a 3 x subbands matrix [i20; i21; i22]
(multi-panel).

References:
- 3GPP TS 38.214: Section 5.2.2.2 (Precoding matrix indicator)
- 3GPP TS 38.214: Section 5.2.1.4 (Reporting configurations)
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .codebook import Codebook, codebook_for_report
from .config import (
    NOISE_VARIANCE_FLOOR,
    SUBCARRIERS_PER_RB,
    CarrierConfig,
    CSIReportConfig,
    CSIRSConfig,
    ValidatedReport,
    as_channel_array,
    clip_noise_variance,
    extract_csirs_subscripts,
    validate_channel,
    validate_num_layers,
    validate_report_config,
)
from .sinr import precoded_sinr_batch
from .subband import SubbandInfo, pmi_subband_info

logger = logging.getLogger(__name__)

# Upper bound on complex elements of one batched H*W product
MAX_BATCH_ELEMENTS = 2 ** 22

# Decimal places kept before comparing SINR totals
SELECTION_DECIMALS = 4


def nan_mean(values: np.ndarray, axis=0) -> np.ndarray:
    """Mean ignoring NaN; all-NaN slices give NaN without a warning"""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmean(values, axis=axis)


@dataclass
class MeasurementREs:
    """CSI-RS resource elements used for CSI measurement"""
    k_carrier: np.ndarray       # Subcarrier in the carrier grid
    k_bwp: np.ndarray           # Subcarrier relative to the BWP start
    symbol: np.ndarray          # OFDM symbol in the slot

    @property
    def count(self) -> int:
        return int(self.k_bwp.size)

    @classmethod
    def locate(cls, carrier: CarrierConfig, csirs: CSIRSConfig,
               report: ValidatedReport) -> "MeasurementREs":
        k_carrier, k_bwp, symbol = extract_csirs_subscripts(carrier, csirs, report)
        if k_bwp.size == 0:
            return cls(k_carrier, k_bwp, symbol)
        # Repeated (k, l) positions would weight an RE twice
        _, first = np.unique(np.stack([k_bwp, symbol]), axis=1, return_index=True)
        first = np.sort(first)
        return cls(k_carrier[first], k_bwp[first], symbol[first])


@dataclass
class PMISet:
    """Selected precoding matrix indicator (1-based, NaN when unavailable)"""
    i1: np.ndarray              # (3,) single-panel, (6,) multi-panel
    i2: np.ndarray              # (subbands,) single-panel, (3, subbands) multi-panel

    @property
    def is_multi_panel(self) -> bool:
        return self.i1.size == 6

    @property
    def num_subbands(self) -> int:
        return self.i2.shape[-1]

    @property
    def is_valid(self) -> bool:
        """False when the report carries no usable CSI"""
        return not np.any(np.isnan(self.i1))

    def i2_columns(self) -> np.ndarray:
        """i2 as a (i2 count, subbands) matrix for both codebook families"""
        return self.i2.reshape(-1, self.num_subbands)

    def indices(self, subband: int = 0) -> Optional[Tuple[int, ...]]:
        """0-based codebook index tuple for a subband, None when NaN"""
        i2 = self.i2_columns()[:, subband]
        if not self.is_valid or np.any(np.isnan(i2)):
            return None
        return tuple(int(v) - 1 for v in np.concatenate([i2, self.i1]))

    def to_dict(self) -> Dict[str, Any]:
        return {"i1": _nan_to_none(self.i1), "i2": _nan_to_none(self.i2)}

    @classmethod
    def unavailable(cls, multi_panel: bool, num_subbands: int) -> "PMISet":
        """All-NaN PMI"""
        if multi_panel:
            return cls(i1=np.full(6, np.nan), i2=np.full((3, num_subbands), np.nan))
        return cls(i1=np.full(3, np.nan), i2=np.full(num_subbands, np.nan))


@dataclass
class PMIInfo:
    """
    SINR evidence behind a PMI decision.

    SINR is held only at the measured resource elements as
    re_sinr[re, candidate, layer], candidates flattened with the first
    codebook index varying fastest. sinr_per_re expands it to the dense
    (K, L, layers, *index_shape) grid on request.
    """
    codebook: Codebook
    subband_info: SubbandInfo
    res: MeasurementREs
    re_sinr: np.ndarray                 # (REs, candidates, layers)
    subband_sinr: np.ndarray            # (subbands, candidates, layers)
    num_subcarriers: int                # BWP subcarriers (K)
    symbols_per_slot: int               # L

    @property
    def W(self) -> np.ndarray:
        return self.codebook.W

    @property
    def num_layers(self) -> int:
        return self.codebook.num_layers

    @property
    def sinr_per_re(self) -> np.ndarray:
        """Dense per-RE SINR (K, L, layers, *index_shape), NaN off CSI-RS"""
        shape = self.codebook.index_shape
        nl = self.num_layers
        grid = np.full(
            (self.num_subcarriers, self.symbols_per_slot, nl, self.codebook.num_candidates),
            np.nan,
        )
        if self.res.count:
            grid[self.res.k_bwp, self.res.symbol] = self.re_sinr.transpose(0, 2, 1)
        return grid.reshape(grid.shape[:3] + shape, order="F")

    @property
    def sinr_per_subband(self) -> np.ndarray:
        """Per-subband SINR (subbands, layers, *index_shape)"""
        sb = self.subband_sinr.transpose(0, 2, 1)
        return sb.reshape(sb.shape[:2] + self.codebook.index_shape, order="F")

    def layer_sinr_per_re(self, indices: Tuple[int, ...]) -> np.ndarray:
        """(REs, layers) SINR of one codebook entry"""
        return self.re_sinr[:, self.codebook.ravel(indices), :]

    def layer_sinr_per_subband(self, subband: int, indices: Tuple[int, ...]) -> np.ndarray:
        """(layers,) SINR of one codebook entry in one subband"""
        return self.subband_sinr[subband, self.codebook.ravel(indices), :]


def _nan_to_none(values: np.ndarray):
    return [
        _nan_to_none(v) if isinstance(v, np.ndarray) else (None if np.isnan(v) else int(v))
        for v in values
    ]


def subband_mean(values: np.ndarray, symbols: np.ndarray) -> np.ndarray:
    """
    Average RE values over subcarriers per OFDM symbol, then over symbols

    Args:
        values: (REs, ...) array
        symbols: OFDM symbol of each RE

    Returns:
        Average with the RE axis removed
    """
    per_symbol = [nan_mean(values[symbols == s], axis=0) for s in np.unique(symbols)]
    return nan_mean(np.stack(per_symbol), axis=0)


def _evaluate_candidates(
    H: np.ndarray, res: MeasurementREs, nvar: float, codebook: Codebook
) -> np.ndarray:
    """SINR per (RE, candidate, layer); NaN for restricted candidates"""
    usable = np.flatnonzero(codebook.usable())
    candidates = codebook.candidates()
    h = H[res.k_carrier, res.symbol]                   # (REs, Rx, P)
    nl = codebook.num_layers
    sinr = np.full((res.count, codebook.num_candidates, nl), np.nan)

    per_candidate = res.count * h.shape[1] * max(nl, h.shape[2])
    chunk = max(1, MAX_BATCH_ELEMENTS // max(per_candidate, 1))
    for start in range(0, usable.size, chunk):
        idx = usable[start:start + chunk]
        sinr[:, idx, :] = precoded_sinr_batch(h, nvar, candidates[idx])
    return sinr


def _best_candidate(scores: np.ndarray, usable: np.ndarray) -> int:
    scores = np.round(scores, SELECTION_DECIMALS)
    scores = np.where(usable, scores, -np.inf)
    return int(np.argmax(scores))


def select_pmi_validated(
    carrier: CarrierConfig,
    report: ValidatedReport,
    num_layers: int,
    H: np.ndarray,
    nvar: float,
    res: MeasurementREs,
) -> Tuple[PMISet, PMIInfo]:
    """
    PMI selection on already validated inputs

    Args:
        carrier: Carrier configuration
        report: Validated report configuration
        num_layers: Number of layers
        H: Channel estimate (K_carrier, L, Rx, P)
        nvar: Clipped noise variance
        res: CSI-RS resource elements inside the BWP

    Returns:
        (PMISet, PMIInfo)
    """
    codebook = codebook_for_report(report, num_layers)
    sb_info = pmi_subband_info(report)
    multi_panel = not report.is_single_panel
    num_i2 = codebook.num_i2
    i2_shape = codebook.index_shape[:num_i2]
    i2_block = int(np.prod(i2_shape))
    K = report.n_size_bwp * SUBCARRIERS_PER_RB
    L = carrier.symbols_per_slot
    C = codebook.num_candidates

    usable = codebook.usable()
    if res.count == 0 or not usable.any():
        logger.warning(
            "No CSI-RS resource elements in the BWP or every codebook entry "
            "is restricted; reporting NaN PMI"
        )
        info = PMIInfo(
            codebook=codebook,
            subband_info=sb_info,
            res=res,
            re_sinr=np.full((res.count, C, num_layers), np.nan),
            subband_sinr=np.full((sb_info.num_subbands, C, num_layers), np.nan),
            num_subcarriers=K,
            symbols_per_slot=L,
        )
        return PMISet.unavailable(multi_panel, sb_info.num_subbands), info

    re_sinr = _evaluate_candidates(H, res, nvar, codebook)

    pmi_set = PMISet.unavailable(multi_panel, sb_info.num_subbands)
    best = None
    if not np.all(np.isnan(re_sinr)):
        totals = np.nansum(re_sinr, axis=(0, 2))
        best = _best_candidate(totals, usable)
        indices = codebook.unravel(best)
        pmi_set.i1 = np.array(indices[num_i2:], dtype=float) + 1
        logger.debug(
            f"Wideband PMI for {num_layers} layer(s): indices {indices}, "
            f"total SINR {totals[best]:.4f}"
        )

    i2 = np.full((num_i2, sb_info.num_subbands), np.nan)
    subband_sinr = np.full((sb_info.num_subbands, C, num_layers), np.nan)
    for sb, sc in enumerate(sb_info.subcarrier_slices()):
        in_sb = (res.k_bwp >= sc.start) & (res.k_bwp < sc.stop)
        if not in_sb.any():
            continue
        subband_sinr[sb] = subband_mean(re_sinr[in_sb], res.symbol[in_sb])
        if best is None:
            continue
        first = (best // i2_block) * i2_block
        block = slice(first, first + i2_block)
        scores = np.nansum(subband_sinr[sb, block], axis=-1)
        choice = _best_candidate(scores, usable[block])
        i2[:, sb] = np.array(np.unravel_index(choice, i2_shape, order="F"), dtype=float) + 1

    pmi_set.i2 = i2 if multi_panel else i2[0]

    info = PMIInfo(
        codebook=codebook,
        subband_info=sb_info,
        res=res,
        re_sinr=re_sinr,
        subband_sinr=subband_sinr,
        num_subcarriers=K,
        symbols_per_slot=L,
    )
    return pmi_set, info


def select_pmi(
    carrier: CarrierConfig,
    csirs: CSIRSConfig,
    report_config: CSIReportConfig,
    num_layers: int,
    H: np.ndarray,
    nvar: float = NOISE_VARIANCE_FLOOR,
) -> Tuple[PMISet, PMIInfo]:
    """
    Select the downlink PMI for a given number of layers

    Args:
        carrier: Carrier configuration
        csirs: CSI-RS configuration (all resources share port count and CDM type)
        report_config: CSI report configuration
        num_layers: Number of transmission layers
        H: Channel estimate (NSizeGrid*12, symbols per slot, Rx, ports)
        nvar: Noise variance estimate (clipped to 1e-10)

    Returns:
        (PMISet, PMIInfo)
    """
    num_ports, _ = csirs.validate()
    report = validate_report_config(carrier, num_ports, report_config)
    num_layers = validate_num_layers(report, num_layers)
    H = as_channel_array(H)
    res = MeasurementREs.locate(carrier, csirs, report)
    if res.count:
        validate_channel(H, carrier, num_ports, num_layers)
    nvar = clip_noise_variance(nvar)
    return select_pmi_validated(carrier, report, num_layers, H, nvar, res)
