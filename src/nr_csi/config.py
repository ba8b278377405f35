"""
CSI Reporting Configuration for 5G NR

Carrier, CSI-RS and CSI report configuration consumed by the PMI, RI and
CQI selectors. Every public selector validates its inputs once, up front:
- BWP resolution against the carrier resource grid
- Type-1 single-panel / multi-panel geometry lookup (N1, N2, Ng -> O1, O2)
- Subband size and PRG size checks
- Codebook subset, i2 and rank restriction masks
- CSI-RS resource element extraction within the BWP
- Noise variance floor

Invalid configurations raise ConfigurationError before any computation.
Degenerate but valid inputs (no CSI-RS in the BWP, every codebook entry
restricted) are not errors; the selectors report them as NaN.

References:
- 3GPP TS 38.214: Physical layer procedures for data (Section 5.2.2)
- 3GPP TS 38.211: Physical channels and modulation (Section 7.4.1.5)
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


# Noise variance below this value is clipped to it
NOISE_VARIANCE_FLOOR = 1e-10

MAX_BWP_SIZE = 275
MAX_BWP_START = 2473

# Below this BWP size (in RBs) subband reporting collapses to wideband
MIN_SUBBAND_BWP_SIZE = 24

SUBCARRIERS_PER_RB = 12

# TS 38.214 Table 5.2.2.2.1-2: (N1, N2) -> (O1, O2)
SINGLE_PANEL_CONFIGS: Dict[Tuple[int, int], Tuple[int, int]] = {
    (2, 1): (4, 1),
    (2, 2): (4, 4),
    (4, 1): (4, 1),
    (3, 2): (4, 4),
    (6, 1): (4, 1),
    (4, 2): (4, 4),
    (8, 1): (4, 1),
    (4, 3): (4, 4),
    (6, 2): (4, 4),
    (12, 1): (4, 1),
    (4, 4): (4, 4),
    (8, 2): (4, 4),
    (16, 1): (4, 1),
}

# TS 38.214 Table 5.2.2.2.2-1: (Ng, N1, N2) -> (O1, O2)
MULTI_PANEL_CONFIGS: Dict[Tuple[int, int, int], Tuple[int, int]] = {
    (2, 2, 1): (4, 1),
    (2, 2, 2): (4, 4),
    (2, 4, 1): (4, 1),
    (4, 2, 1): (4, 1),
    (2, 8, 1): (4, 1),
    (2, 4, 2): (4, 4),
    (4, 4, 1): (4, 1),
    (4, 2, 2): (4, 4),
}

MULTI_PANEL_PORTS = (8, 16, 32)

# TS 38.214 Table 5.2.1.4-2: BWP size range -> configurable subband sizes
SUBBAND_SIZE_TABLE: Tuple[Tuple[int, int, Tuple[int, int]], ...] = (
    (24, 72, (4, 8)),
    (73, 144, (8, 16)),
    (145, 275, (16, 32)),
)

VALID_PRG_SIZES = (2, 4)


class ConfigurationError(ValueError):
    """Invalid carrier, CSI-RS or CSI report configuration"""


class CodebookType(Enum):
    """Type-1 codebook families per 3GPP TS 38.214 Section 5.2.2.2"""
    TYPE1_SINGLE_PANEL = "Type1SinglePanel"    # Tables 5.2.2.2.1-1..12
    TYPE1_MULTI_PANEL = "Type1MultiPanel"      # Tables 5.2.2.2.2-1..6


class ReportingMode(Enum):
    """PMI / CQI frequency granularity"""
    WIDEBAND = "Wideband"     # One report for the whole BWP
    SUBBAND = "Subband"       # One report per subband


class CDMType(Enum):
    """CSI-RS code division multiplexing type"""
    NO_CDM = "noCDM"
    FD_CDM2 = "FD-CDM2"       # 2 subcarriers
    CDM4 = "CDM4"             # 2 subcarriers x 2 symbols
    CDM8 = "CDM8"             # 2 subcarriers x 4 symbols

    @property
    def symbols_per_group(self) -> int:
        """Number of OFDM symbols spanned by one CDM group"""
        return {"CDM4": 2, "CDM8": 4}.get(self.value, 1)


def parse_enum(enum_cls, value, name: str):
    """Resolve an enum member from a member, value or name (case-insensitive)"""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        for member in enum_cls:
            if key in (member.value.lower(), member.name.lower()):
                return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ConfigurationError(f"{name} ({value!r}) must be one of: {allowed}")


# =============================================================================
# Configuration Objects
# =============================================================================

@dataclass
class CarrierConfig:
    """Carrier resource grid (immutable for the duration of a call)"""
    subcarrier_spacing: int = 15            # kHz
    cyclic_prefix: str = "normal"           # "normal" or "extended"
    n_size_grid: int = 52                   # Carrier size in RBs
    n_start_grid: int = 0                   # Carrier start in common RBs
    n_slot: int = 0
    n_frame: int = 0

    @property
    def symbols_per_slot(self) -> int:
        """OFDM symbols per slot"""
        return 12 if self.cyclic_prefix.lower() == "extended" else 14

    @property
    def num_subcarriers(self) -> int:
        """Subcarriers in the carrier grid"""
        return self.n_size_grid * SUBCARRIERS_PER_RB

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CarrierConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CSIRSResource:
    """
    One CSI-RS resource as located by the reference signal generator.

    indices holds 0-based (subcarrier, symbol, port) subscripts into the
    carrier grid, one row per resource element and port.
    """
    indices: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=int))
    num_ports: int = 1
    cdm_type: CDMType = CDMType.NO_CDM
    csirs_type: str = "nzp"                 # "nzp" or "zp"

    def __post_init__(self):
        self.indices = np.asarray(self.indices, dtype=int).reshape(-1, 3)
        self.cdm_type = parse_enum(CDMType, self.cdm_type, "CDMType")
        if self.csirs_type.lower() not in ("nzp", "zp"):
            raise ConfigurationError(
                f"CSIRSType ({self.csirs_type!r}) must be 'nzp' or 'zp'"
            )

    @property
    def is_zero_power(self) -> bool:
        return self.csirs_type.lower() == "zp"


@dataclass
class CSIRSConfig:
    """Set of CSI-RS resources used for one CSI report"""
    resources: List[CSIRSResource] = field(default_factory=list)

    def validate(self) -> Tuple[int, CDMType]:
        """Check the resources are consistent; returns (ports, CDM type)"""
        if not self.resources:
            raise ConfigurationError("At least one CSI-RS resource is required")
        return self.num_ports, self.cdm_type

    @property
    def num_ports(self) -> int:
        """Port count shared by every resource"""
        ports = {r.num_ports for r in self.resources}
        if len(ports) != 1:
            raise ConfigurationError(
                "All the CSI-RS resources must be configured to have the "
                "same number of CSI-RS ports"
            )
        return ports.pop()

    @property
    def cdm_type(self) -> CDMType:
        """CDM type shared by every resource"""
        types = {r.cdm_type for r in self.resources}
        if len(types) != 1:
            raise ConfigurationError(
                "All the CSI-RS resources must be configured to have the "
                "same CDM lengths"
            )
        return types.pop()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CSIRSConfig":
        resources = [
            CSIRSResource(
                indices=np.asarray(r.get("indices", []), dtype=int),
                num_ports=int(r.get("num_ports", 1)),
                cdm_type=r.get("cdm_type", CDMType.NO_CDM),
                csirs_type=r.get("csirs_type", "nzp"),
            )
            for r in data.get("resources", [])
        ]
        return cls(resources=resources)


@dataclass
class CSIReportConfig:
    """
    CSI report configuration.

    n_size_bwp and n_start_bwp are mandatory; passing None for either one
    resolves it to the carrier grid size/start.
    """
    n_size_bwp: Optional[int]
    n_start_bwp: Optional[int]
    codebook_type: CodebookType = CodebookType.TYPE1_SINGLE_PANEL
    panel_dimensions: Optional[Sequence[int]] = None    # [N1, N2] or [Ng, N1, N2]
    pmi_mode: ReportingMode = ReportingMode.WIDEBAND
    cqi_mode: ReportingMode = ReportingMode.WIDEBAND
    subband_size: Optional[int] = None                  # NSBPRB
    prg_size: Optional[int] = None                      # 2, 4 or None
    codebook_mode: int = 1

    # Restriction bitmaps (None means "no restriction")
    codebook_subset_restriction: Optional[Sequence[int]] = None
    i2_restriction: Optional[Sequence[int]] = None
    ri_restriction: Optional[Sequence[int]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CSIReportConfig":
        """Build a report configuration from a JSON-style dictionary"""
        for key in ("n_size_bwp", "n_start_bwp"):
            if key not in data:
                raise ConfigurationError(f"{key} field is mandatory")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown report fields: {sorted(unknown)}")
        return cls(**data)


@dataclass(frozen=True)
class ValidatedReport:
    """Fully resolved, immutable report configuration"""
    n_start_bwp: int
    n_size_bwp: int
    bwp_offset: int                         # BWP start relative to carrier start (RBs)
    codebook_type: CodebookType
    codebook_mode: int
    num_ports: int
    panel_dimensions: Tuple[int, ...]       # (N1, N2) or (Ng, N1, N2)
    oversampling: Tuple[int, int]           # (O1, O2)
    pmi_mode: ReportingMode
    cqi_mode: ReportingMode
    subband_size: Optional[int]
    prg_size: Optional[int]
    codebook_subset_restriction: Tuple[int, ...]
    i2_restriction: Tuple[int, ...]
    ri_restriction: Tuple[int, ...]

    @property
    def is_single_panel(self) -> bool:
        return self.codebook_type is CodebookType.TYPE1_SINGLE_PANEL

    @property
    def max_layers(self) -> int:
        """Largest layer count the codebook family defines"""
        return 8 if self.is_single_panel else 4

    @property
    def num_i1(self) -> int:
        """Number of i1 sub-indices reported"""
        return 3 if self.is_single_panel else 6


# =============================================================================
# Validation
# =============================================================================

def _check_int(value, name: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer, float)):
        raise ConfigurationError(f"{name} ({value!r}) must be an integer")
    if not np.isfinite(value) or float(value) != int(value):
        raise ConfigurationError(f"{name} ({value!r}) must be an integer")
    value = int(value)
    if value < low or value > high:
        raise ConfigurationError(f"{name} ({value}) must be in the range [{low}, {high}]")
    return value


def _check_bitmap(bits, name: str, length: int) -> Tuple[int, ...]:
    if bits is None or len(bits) == 0:
        return (1,) * length
    arr = np.asarray(bits).ravel()
    if arr.size != length:
        raise ConfigurationError(f"{name} must have {length} elements, got {arr.size}")
    if not np.all((arr == 0) | (arr == 1)):
        raise ConfigurationError(f"{name} must be binary")
    return tuple(int(b) for b in arr)


def valid_subband_sizes(n_size_bwp: int) -> Tuple[int, int]:
    """Configurable subband sizes for a BWP size (TS 38.214 Table 5.2.1.4-2)"""
    for low, high, sizes in SUBBAND_SIZE_TABLE:
        if low <= n_size_bwp <= high:
            return sizes
    raise ConfigurationError(
        f"No subband size is defined for a BWP of {n_size_bwp} RBs"
    )


def panel_dimension_options(num_ports: int) -> List[Tuple[int, int]]:
    """Single-panel (N1, N2) options for a CSI-RS port count"""
    return [dims for dims in SINGLE_PANEL_CONFIGS if 2 * dims[0] * dims[1] == num_ports]


def clip_noise_variance(nvar) -> float:
    """Validate a noise variance estimate and clip it to NOISE_VARIANCE_FLOOR"""
    if np.iscomplexobj(nvar) or np.ndim(nvar) != 0:
        raise ConfigurationError(f"NVAR ({nvar!r}) must be a real scalar")
    nvar = float(nvar)
    if not np.isfinite(nvar) or nvar < 0:
        raise ConfigurationError(f"NVAR ({nvar}) must be finite and nonnegative")
    if nvar < NOISE_VARIANCE_FLOOR:
        logger.debug(f"Noise variance {nvar} clipped to {NOISE_VARIANCE_FLOOR}")
        nvar = NOISE_VARIANCE_FLOOR
    return nvar


def validate_report_config(
    carrier: CarrierConfig,
    num_ports: int,
    report: CSIReportConfig,
    for_cqi: bool = False,
) -> ValidatedReport:
    """
    Validate a CSI report configuration against the carrier and CSI-RS port count

    Args:
        carrier: Carrier configuration
        num_ports: Number of CSI-RS ports
        report: Report configuration to validate
        for_cqi: Also require a subband size when the CQI mode is Subband

    Returns:
        ValidatedReport with every default resolved
    """
    # BWP
    n_size_bwp = report.n_size_bwp
    if n_size_bwp is None:
        n_size_bwp = carrier.n_size_grid
    n_size_bwp = _check_int(n_size_bwp, "NSizeBWP", 1, MAX_BWP_SIZE)
    n_start_bwp = report.n_start_bwp
    if n_start_bwp is None:
        n_start_bwp = carrier.n_start_grid
    n_start_bwp = _check_int(n_start_bwp, "NStartBWP", 0, MAX_BWP_START)
    if n_start_bwp < carrier.n_start_grid:
        raise ConfigurationError(
            f"The starting resource block of BWP ({n_start_bwp}) must be greater "
            f"than or equal to the starting resource block of carrier "
            f"({carrier.n_start_grid})"
        )
    if n_start_bwp + n_size_bwp > carrier.n_start_grid + carrier.n_size_grid:
        raise ConfigurationError(
            f"The sum of starting resource block of BWP ({n_start_bwp}) and the "
            f"size of BWP ({n_size_bwp}) must be less than or equal to the sum of "
            f"starting resource block of carrier ({carrier.n_start_grid}) and size "
            f"of the carrier ({carrier.n_size_grid})"
        )

    codebook_type = parse_enum(CodebookType, report.codebook_type, "CodebookType")
    single_panel = codebook_type is CodebookType.TYPE1_SINGLE_PANEL
    codebook_mode = _check_int(report.codebook_mode, "CodebookMode", 1, 2)
    num_ports = _check_int(num_ports, "NumCSIRSPorts", 1, 32)

    # Panel geometry
    panel: Tuple[int, ...] = (1, 1)
    oversampling = (1, 1)
    if single_panel:
        if num_ports > 2:
            panel = _panel_tuple(report.panel_dimensions, 2, num_ports)
            if panel not in SINGLE_PANEL_CONFIGS:
                raise ConfigurationError(
                    f"The given panel configuration {list(panel)} is not valid. "
                    f"For {num_ports} CSI-RS ports the panel configuration should "
                    f"be one of {[list(p) for p in panel_dimension_options(num_ports)]} "
                    f"(TS 38.214 Table 5.2.2.2.1-2)"
                )
            oversampling = SINGLE_PANEL_CONFIGS[panel]
    else:
        if num_ports not in MULTI_PANEL_PORTS:
            raise ConfigurationError(
                "For multipanel codebook type, the number of CSI-RS ports must "
                "be 8, 16, or 32"
            )
        panel = _panel_tuple(report.panel_dimensions, 3, num_ports)
        if panel not in MULTI_PANEL_CONFIGS:
            raise ConfigurationError(
                f"The given panel configuration {list(panel)} is not valid "
                f"(TS 38.214 Table 5.2.2.2.2-1)"
            )
        if codebook_mode == 2 and panel[0] != 2:
            raise ConfigurationError(
                f"For codebook mode 2, number of panels Ng ({panel[0]}) must be 2"
            )
        oversampling = MULTI_PANEL_CONFIGS[panel]

    pmi_mode = parse_enum(ReportingMode, report.pmi_mode, "PMIMode")
    cqi_mode = parse_enum(ReportingMode, report.cqi_mode, "CQIMode")

    # PRG applies to the single-panel codebook only
    prg_size = None
    if single_panel and report.prg_size is not None:
        if report.prg_size not in VALID_PRG_SIZES:
            raise ConfigurationError(
                f"PRGSize ({report.prg_size}) must be None, 2, or 4"
            )
        prg_size = int(report.prg_size)

    needs_subband = (
        (pmi_mode is ReportingMode.SUBBAND and prg_size is None)
        or (for_cqi and cqi_mode is ReportingMode.SUBBAND)
    )
    subband_size = None
    if needs_subband and n_size_bwp >= MIN_SUBBAND_BWP_SIZE:
        if report.subband_size is None:
            raise ConfigurationError(
                "For the subband mode, SubbandSize field is mandatory when the "
                f"size of BWP is at least {MIN_SUBBAND_BWP_SIZE} PRBs"
            )
        allowed = valid_subband_sizes(n_size_bwp)
        if report.subband_size not in allowed:
            raise ConfigurationError(
                f"For the configured BWP size ({n_size_bwp}), subband size "
                f"({report.subband_size}) must be {allowed[0]} or {allowed[1]}"
            )
        subband_size = int(report.subband_size)

    # Restriction masks
    n1, n2 = panel[-2:]
    o1, o2 = oversampling
    if num_ports > 2:
        csr_length = n1 * o1 * n2 * o2
    elif num_ports == 2:
        csr_length = 6
    else:
        csr_length = 1
    csr = _check_bitmap(report.codebook_subset_restriction, "CodebookSubsetRestriction", csr_length)

    i2_restriction = (1,) * 16
    if single_panel and num_ports > 2:
        i2_restriction = _check_bitmap(report.i2_restriction, "i2Restriction", 16)

    ri_length = 8 if single_panel else 4
    ri_restriction = _check_bitmap(report.ri_restriction, "RIRestriction", ri_length)

    return ValidatedReport(
        n_start_bwp=n_start_bwp,
        n_size_bwp=n_size_bwp,
        bwp_offset=n_start_bwp - carrier.n_start_grid,
        codebook_type=codebook_type,
        codebook_mode=codebook_mode,
        num_ports=num_ports,
        panel_dimensions=panel,
        oversampling=oversampling,
        pmi_mode=pmi_mode,
        cqi_mode=cqi_mode,
        subband_size=subband_size,
        prg_size=prg_size,
        codebook_subset_restriction=csr,
        i2_restriction=i2_restriction,
        ri_restriction=ri_restriction,
    )


def _panel_tuple(dims, length: int, num_ports: int) -> Tuple[int, ...]:
    if dims is None:
        raise ConfigurationError("PanelDimensions field is mandatory")
    dims = tuple(int(d) for d in np.asarray(dims).ravel())
    if len(dims) != length:
        raise ConfigurationError(f"PanelDimensions must have {length} elements")
    if 2 * int(np.prod(dims)) != num_ports:
        raise ConfigurationError(
            f"For the configured number of CSI-RS ports ({num_ports}), the given "
            f"panel configuration {list(dims)} is not valid. Two times the product "
            f"of panel dimensions ({2 * int(np.prod(dims))}) must be equal to the "
            f"number of CSI-RS ports"
        )
    return dims


def validate_num_layers(report: ValidatedReport, num_layers) -> int:
    """Check the layer count against the codebook family"""
    family = report.codebook_type.value
    return _check_int(
        num_layers, f"NLAYERS when codebook type is {family}", 1, report.max_layers
    )


# =============================================================================
# Channel and CSI-RS resource elements
# =============================================================================

def as_channel_array(H) -> np.ndarray:
    """Return H as a complex (K, L, R, P) array, appending singleton dims"""
    H = np.asarray(H)
    if H.ndim < 2 or H.ndim > 4:
        raise ConfigurationError(
            f"H must have 2 to 4 dimensions (K, L, R, P), got {H.ndim}"
        )
    while H.ndim < 4:
        H = H[..., np.newaxis]
    return H.astype(complex, copy=False)


def validate_channel(
    H: np.ndarray,
    carrier: CarrierConfig,
    num_ports: int,
    num_layers: int,
) -> int:
    """
    Validate the channel estimate dimensions and the layer count

    Returns:
        Number of receive antennas
    """
    expected = (carrier.num_subcarriers, carrier.symbols_per_slot)
    if H.shape[:2] != expected or H.shape[3] != num_ports:
        raise ConfigurationError(
            f"H must be of size {expected[0]}x{expected[1]}xNrx{num_ports}, "
            f"got {'x'.join(str(s) for s in H.shape)}"
        )
    num_rx = H.shape[2]
    max_layers = min(num_rx, num_ports)
    if num_layers > max_layers:
        raise ConfigurationError(
            f"The given antenna configuration ({num_ports}x{num_rx}) supports "
            f"only up to ({max_layers}) layers"
        )
    return num_rx


def extract_csirs_subscripts(
    carrier: CarrierConfig,
    csirs: CSIRSConfig,
    report: ValidatedReport,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Locate the CSI-RS resource elements used for CSI measurement

    Zero-power resources are dropped and only the first port is kept. For
    CDM resources one RE per CDM group is retained, since all REs of a
    group observe the same channel.

    Returns:
        (k_carrier, k_bwp, l): carrier subcarrier, BWP-relative subcarrier
        and symbol of each retained RE
    """
    cdm_type = csirs.cdm_type
    kept = []
    for resource in csirs.resources:
        if resource.is_zero_power:
            continue
        ind = resource.indices[resource.indices[:, 2] == 0]
        if cdm_type is not CDMType.NO_CDM:
            per_symbol = ind.shape[0] // cdm_type.symbols_per_group
            ind = ind[:per_symbol][::2]
        kept.append(ind)

    if kept:
        ind = np.concatenate(kept, axis=0)
    else:
        ind = np.zeros((0, 3), dtype=int)

    k = ind[:, 0]
    l = ind[:, 1]
    lower = report.bwp_offset * SUBCARRIERS_PER_RB
    upper = (report.bwp_offset + report.n_size_bwp) * SUBCARRIERS_PER_RB
    in_bwp = (k >= lower) & (k < upper)
    return k[in_bwp], k[in_bwp] - lower, l[in_bwp]
