"""
Downlink CQI Selection

Maps post-precoding SINR to channel quality indicators:
- Wideband CQI per codeword from the SINR of the selected PMI
- Subband CQI reported as 2-bit differential offsets from the wideband CQI
- PRG-based PMI: one i2 drawn per CQI subband from the PRGs it spans
- Single-port syntax with explicit CSI-RS subscripts (precoder W = 1)

SINR lookup tables hold the minimum SINR (dB) of CQI 1..15 at the target
block error rate; SINR below the first entry gives CQI 0.

References:
- 3GPP TS 38.214: Section 5.2.2.1 (Channel quality indicator)
- 3GPP TS 38.214: Table 5.2.2.1-2 (4-bit CQI table)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple, Union

import numpy as np

from .config import (
    NOISE_VARIANCE_FLOOR,
    SUBCARRIERS_PER_RB,
    CarrierConfig,
    ConfigurationError,
    CSIReportConfig,
    CSIRSConfig,
    ReportingMode,
    ValidatedReport,
    as_channel_array,
    clip_noise_variance,
    validate_channel,
    validate_num_layers,
    validate_report_config,
)
from .pmi import (
    MeasurementREs,
    PMIInfo,
    PMISet,
    nan_mean,
    select_pmi_validated,
    subband_mean,
)
from .sinr import codeword_sinr, layers_per_codeword
from .subband import SubbandInfo, cqi_subband_info, prg_to_subband_ranges

logger = logging.getLogger(__name__)


# AWGN SISO, 10% BLER, TS 38.214 Table 5.2.2.1-2
DEFAULT_SINR_TABLE = (
    -5.84, -4.20, -2.08, -0.23, 1.66, 3.08, 5.03, 7.02,
    9.01, 10.99, 12.99, 15.01, 16.51, 18.49, 19.99,
)

SINR_TABLES: Dict[str, Tuple[float, ...]] = {
    "default": DEFAULT_SINR_TABLE,
    "downlink_90pc": (
        -3.46, 1.54, 6.54, 11.05, 13.54, 16.04, 17.54, 20.04,
        22.04, 24.43, 26.93, 27.43, 29.43, 32.43, 35.43,
    ),
    "uplink_90pc": (
        -5.46, -0.46, 4.54, 9.05, 11.54, 14.04, 15.54, 18.04,
        20.04, 22.43, 24.93, 25.43, 27.43, 30.43, 33.43,
    ),
}

# Seed of the generator picking one i2 per CQI subband under PRG reporting
PRG_SELECTION_SEED = 0


@dataclass
class CQIInfo:
    """SINR behind a CQI report"""
    sinr_per_rb_per_cw: np.ndarray          # (NSizeBWP, symbols, codewords)
    sinr_per_subband_per_cw: np.ndarray     # (1 [+ subbands], codewords)
    subband_cqi: np.ndarray                 # Absolute CQI, same shape

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sinr_per_subband_per_cw": _to_json(self.sinr_per_subband_per_cw),
            "subband_cqi": _to_json(self.subband_cqi),
        }


def _to_json(values: np.ndarray):
    return np.where(np.isnan(values), None, values).tolist()


def sinr_table(table: Union[None, str, Sequence[float]] = None) -> np.ndarray:
    """
    Resolve an SINR lookup table

    Args:
        table: None (default table), a name from SINR_TABLES, or 15 / 16
            ascending dB values (16 values include the CQI 0 level)
    """
    if table is None:
        table = DEFAULT_SINR_TABLE
    elif isinstance(table, str):
        if table not in SINR_TABLES:
            raise ConfigurationError(
                f"Unknown SINR table {table!r}; available: {sorted(SINR_TABLES)}"
            )
        table = SINR_TABLES[table]
    values = np.asarray(table, dtype=float).ravel()
    if values.size not in (15, 16):
        raise ConfigurationError(f"SINR table must have 15 or 16 entries, got {values.size}")
    if not np.all(np.isfinite(values)) or np.any(np.diff(values) < 0):
        raise ConfigurationError("SINR table must hold finite, ascending dB values")
    return values


def cqi_from_sinr(sinr, table: Union[None, str, Sequence[float]] = None):
    """
    Map linear SINR to CQI

    CQI is the (1-based for 15-entry tables) index of the largest table
    entry not above the SINR in dB, 0 when SINR is below every entry and
    NaN when SINR is NaN.
    """
    values = sinr_table(table)
    sinr = np.asarray(sinr, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        sinr_db = 10 * np.log10(sinr)
    count = np.sum(values <= sinr_db[..., np.newaxis], axis=-1)
    if values.size == 16:
        count = np.maximum(count - 1, 0)
    cqi = np.where(np.isnan(sinr), np.nan, count.astype(float))
    return float(cqi) if cqi.ndim == 0 else cqi


def differential_cqi(subband_cqi, wideband_cqi) -> np.ndarray:
    """
    2-bit subband differential CQI (TS 38.214 Table 5.2.2.1-1)

    offset 0 -> 0, 1 -> 1, >= 2 -> 2, <= -1 -> 3; NaN stays NaN
    """
    diff = np.asarray(subband_cqi, dtype=float) - np.asarray(wideband_cqi, dtype=float)
    offset = np.full(diff.shape, np.nan)
    offset[diff == 0] = 0
    offset[diff == 1] = 1
    offset[diff >= 2] = 2
    offset[diff <= -1] = 3
    return offset


def _row_codeword_sinr(layer_sinr: np.ndarray, num_codewords: int) -> np.ndarray:
    """Codeword SINR for each row; a NaN layer makes the whole row NaN"""
    out = np.full((layer_sinr.shape[0], num_codewords), np.nan)
    for row, layers in enumerate(layer_sinr):
        if not np.any(np.isnan(layers)):
            out[row] = codeword_sinr(layers)
    return out


def _flat_candidate(pmi_info: PMIInfo, i2, i1: np.ndarray) -> int:
    indices = tuple(int(v) - 1 for v in np.concatenate([np.ravel(i2), i1]))
    return pmi_info.codebook.ravel(indices)


def _sinr_per_rb(
    pmi_info: PMIInfo,
    i1: np.ndarray,
    i2_columns: np.ndarray,
    subbands: SubbandInfo,
    num_rb: int,
    num_codewords: int,
) -> np.ndarray:
    """Codeword SINR per RB and symbol for the per-subband precoders"""
    res = pmi_info.res
    per_re = np.full(
        (num_rb * SUBCARRIERS_PER_RB, pmi_info.symbols_per_slot, num_codewords), np.nan
    )
    for sb, sc in enumerate(subbands.subcarrier_slices()[:i2_columns.shape[1]]):
        if np.any(np.isnan(i2_columns[:, sb])):
            continue
        in_sb = (res.k_bwp >= sc.start) & (res.k_bwp < sc.stop)
        layers = pmi_info.re_sinr[in_sb, _flat_candidate(pmi_info, i2_columns[:, sb], i1), :]
        keep = ~np.all(np.isnan(layers), axis=1)
        per_re[res.k_bwp[in_sb][keep], res.symbol[in_sb][keep]] = codeword_sinr(layers[keep])
    per_rb = per_re.reshape(num_rb, SUBCARRIERS_PER_RB, *per_re.shape[1:])
    return nan_mean(per_rb, axis=1)


def _subband_layer_sinr(
    pmi_info: PMIInfo,
    i1: np.ndarray,
    i2_columns: np.ndarray,
    subbands: SubbandInfo,
) -> np.ndarray:
    """Layer SINR per subband, averaged from the per-RE SINR"""
    res = pmi_info.res
    out = np.full((subbands.num_subbands, pmi_info.num_layers), np.nan)
    for sb, sc in enumerate(subbands.subcarrier_slices()):
        if np.any(np.isnan(i2_columns[:, sb])):
            continue
        in_sb = (res.k_bwp >= sc.start) & (res.k_bwp < sc.stop)
        if not in_sb.any():
            continue
        flat = _flat_candidate(pmi_info, i2_columns[:, sb], i1)
        out[sb] = subband_mean(pmi_info.re_sinr[in_sb, flat, :], res.symbol[in_sb])
    return out


def _unavailable(report: ValidatedReport, cqi_info: SubbandInfo, symbols: int,
                 num_codewords: int) -> Tuple[np.ndarray, CQIInfo]:
    rows = 1 if cqi_info.num_subbands == 1 else cqi_info.num_subbands + 1
    nan_rows = np.full((rows, num_codewords), np.nan)
    info = CQIInfo(
        sinr_per_rb_per_cw=np.full((report.n_size_bwp, symbols, num_codewords), np.nan),
        sinr_per_subband_per_cw=nan_rows.copy(),
        subband_cqi=nan_rows.copy(),
    )
    return nan_rows, info


def cqi_from_pmi(
    report: ValidatedReport,
    pmi_set: PMISet,
    pmi_info: PMIInfo,
    table: np.ndarray,
) -> Tuple[np.ndarray, CQIInfo]:
    """
    CQI report for an already selected PMI

    Returns:
        (CQI, CQIInfo); CQI has one row (wideband) or 1 + subbands rows
        (wideband CQI followed by differential offsets), one column per
        codeword
    """
    num_layers = pmi_info.num_layers
    num_codewords = len(layers_per_codeword(num_layers))
    cqi_sb = cqi_subband_info(report)
    pmi_sb = pmi_info.subband_info

    if not pmi_set.is_valid:
        logger.warning("PMI unavailable; reporting NaN CQI")
        return _unavailable(report, cqi_sb, pmi_info.symbols_per_slot, num_codewords)

    i1 = pmi_set.i1
    i2_columns = pmi_set.i2_columns()

    if report.prg_size is not None:
        rng = np.random.default_rng(PRG_SELECTION_SEED)
        prg_i2 = i2_columns[0]
        layer_sinr = np.full((cqi_sb.num_subbands, num_layers), np.nan)
        if report.cqi_mode is ReportingMode.SUBBAND:
            ranges = prg_to_subband_ranges(cqi_sb, pmi_sb)
            chosen = np.full(cqi_sb.num_subbands, np.nan)
            for sb, (first, stop) in enumerate(ranges):
                i2_set = prg_i2[first:stop]
                chosen[sb] = i2_set[rng.integers(i2_set.size)]
                if not np.isnan(chosen[sb]):
                    flat = _flat_candidate(pmi_info, chosen[sb], i1)
                    layer_sinr[sb] = nan_mean(pmi_info.subband_sinr[first:stop, flat, :], axis=0)
        else:
            i2_set = prg_i2[~np.isnan(prg_i2)]
            chosen = np.array([i2_set[rng.integers(i2_set.size)]])
            flat = _flat_candidate(pmi_info, chosen[0], i1)
            layer_sinr[:] = nan_mean(pmi_info.subband_sinr[:, flat, :], axis=0)
        logger.debug(f"PRG reporting: i2 per CQI subband {chosen}")
        sinr_rb = _sinr_per_rb(
            pmi_info, i1, chosen[np.newaxis, :], cqi_sb, report.n_size_bwp, num_codewords
        )
    else:
        sinr_rb = _sinr_per_rb(
            pmi_info, i1, i2_columns, pmi_sb, report.n_size_bwp, num_codewords
        )
        if report.pmi_mode is ReportingMode.WIDEBAND:
            replicated = np.repeat(i2_columns[:, :1], cqi_sb.num_subbands, axis=1)
            layer_sinr = _subband_layer_sinr(pmi_info, i1, replicated, cqi_sb)
        else:
            rows = max(cqi_sb.num_subbands, pmi_set.num_subbands)
            layer_sinr = np.full((rows, num_layers), np.nan)
            for sb in range(pmi_set.num_subbands):
                indices = pmi_set.indices(sb)
                if indices is not None:
                    layer_sinr[sb] = pmi_info.layer_sinr_per_subband(sb, indices)

    sinr_cw = _row_codeword_sinr(layer_sinr, num_codewords)
    if sinr_cw.shape[0] > 1:
        sinr_cw = np.vstack([nan_mean(sinr_cw, axis=0), sinr_cw])

    all_cqi = cqi_from_sinr(sinr_cw, table)
    if report.cqi_mode is ReportingMode.SUBBAND:
        cqi = np.vstack([all_cqi[:1], differential_cqi(all_cqi[1:], all_cqi[0])])
        info = CQIInfo(sinr_rb, sinr_cw, all_cqi)
    else:
        cqi = all_cqi[:1]
        info = CQIInfo(sinr_rb, sinr_cw[:1], all_cqi[:1])

    logger.debug(f"Wideband CQI {cqi[0]} for {num_layers} layer(s)")
    return cqi, info


def select_cqi(
    carrier: CarrierConfig,
    csirs: CSIRSConfig,
    report_config: CSIReportConfig,
    num_layers: int,
    H: np.ndarray,
    nvar: float = NOISE_VARIANCE_FLOOR,
    table: Union[None, str, Sequence[float]] = None,
) -> Tuple[np.ndarray, PMISet, CQIInfo, PMIInfo]:
    """
    Select the downlink CQI for a given number of layers

    Args:
        carrier: Carrier configuration
        csirs: CSI-RS configuration
        report_config: CSI report configuration
        num_layers: Number of transmission layers
        H: Channel estimate (NSizeGrid*12, symbols per slot, Rx, ports)
        nvar: Noise variance estimate
        table: SINR lookup table (see sinr_table())

    Returns:
        (CQI, PMISet, CQIInfo, PMIInfo)
    """
    num_ports, _ = csirs.validate()
    report = validate_report_config(carrier, num_ports, report_config, for_cqi=True)
    num_layers = validate_num_layers(report, num_layers)
    table = sinr_table(table)
    H = as_channel_array(H)
    res = MeasurementREs.locate(carrier, csirs, report)
    if res.count:
        validate_channel(H, carrier, num_ports, num_layers)
    nvar = clip_noise_variance(nvar)

    pmi_set, pmi_info = select_pmi_validated(carrier, report, num_layers, H, nvar, res)
    cqi, cqi_info = cqi_from_pmi(report, pmi_set, pmi_info, table)
    return cqi, pmi_set, cqi_info, pmi_info


def select_cqi_siso(
    carrier: CarrierConfig,
    report_config: CSIReportConfig,
    csirs_indices: np.ndarray,
    H: np.ndarray,
    nvar: float,
    table: Union[None, str, Sequence[float]] = None,
) -> Tuple[np.ndarray, PMISet, CQIInfo, PMIInfo]:
    """
    CQI for a single transmit port from explicit CSI-RS subscripts

    Args:
        carrier: Carrier configuration
        report_config: Report configuration (BWP, CQI mode, subband size)
        csirs_indices: 0-based (subcarrier, symbol[, port]) rows in the carrier grid
        H: Channel estimate (NSizeGrid*12, symbols per slot[, Rx, 1])
        nvar: Noise variance estimate
        table: SINR lookup table

    Returns:
        (CQI, PMISet, CQIInfo, PMIInfo); the PMI is i1 = [1, 1, 1], i2 = 1
    """
    report = validate_report_config(
        carrier,
        1,
        CSIReportConfig(
            n_size_bwp=report_config.n_size_bwp,
            n_start_bwp=report_config.n_start_bwp,
            cqi_mode=report_config.cqi_mode,
            subband_size=report_config.subband_size,
        ),
        for_cqi=True,
    )
    table = sinr_table(table)
    H = as_channel_array(H)
    nvar = clip_noise_variance(nvar)

    subs = np.atleast_2d(np.asarray(csirs_indices, dtype=int))
    if subs.size:
        subs = np.unique(subs[:, :2], axis=0)
    else:
        subs = np.zeros((0, 2), dtype=int)
    lower = report.bwp_offset * SUBCARRIERS_PER_RB
    upper = (report.bwp_offset + report.n_size_bwp) * SUBCARRIERS_PER_RB
    subs = subs[(subs[:, 0] >= lower) & (subs[:, 0] < upper)]
    res = MeasurementREs(subs[:, 0], subs[:, 0] - lower, subs[:, 1])
    if res.count:
        validate_channel(H, carrier, 1, 1)

    pmi_set, pmi_info = select_pmi_validated(carrier, report, 1, H, nvar, res)
    cqi, cqi_info = cqi_from_pmi(report, pmi_set, pmi_info, table)
    return cqi, pmi_set, cqi_info, pmi_info
