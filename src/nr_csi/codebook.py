"""
Type-1 Precoding Codebooks for 5G NR CSI Reporting

Generates the candidate precoding matrices searched by the PMI selector:
- Single-panel codebook for 1, 2 and 4..32 CSI-RS ports, 1-8 layers,
  codebook modes 1 and 2 (TS 38.214 Tables 5.2.2.2.1-1, 5.2.2.2.1-5..12)
- Multi-panel codebook for Ng = 2/4 panels, 1-4 layers, codebook modes
  1 and 2 (TS 38.214 Tables 5.2.2.2.2-3..6)
- Codebook subset restriction and i2 restriction (restricted entries are
  all-zero matrices and are never selected)

The codebook depends only on configuration, so generate_codebook() is
memoised and hands out read-only arrays.

Index layout of W (first index varies fastest when flattened):
- Single-panel: W[port, layer, i2, i11, i12, i13]
- Multi-panel:  W[port, layer, i20, i21, i22, i11, i12, i13, i141, i142, i143]

References:
- 3GPP TS 38.214: Section 5.2.2.2.1 (Type I single-panel codebook)
- 3GPP TS 38.214: Section 5.2.2.2.2 (Type I multi-panel codebook)
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from .config import (
    CodebookType,
    ConfigurationError,
    ValidatedReport,
    parse_enum,
)

logger = logging.getLogger(__name__)


SINGLE_PANEL_INDEX_NAMES = ("i2", "i11", "i12", "i13")
MULTI_PANEL_INDEX_NAMES = (
    "i20", "i21", "i22", "i11", "i12", "i13", "i141", "i142", "i143",
)

# Beam group offsets (l, m) for codebook mode 2, selected by i2
MODE2_BEAM_OFFSETS = ((0, 0), (1, 0), (0, 1), (1, 1))

# 3/4-layer (k1, k2) offsets, TS 38.214 Table 5.2.2.2.1-4 (P < 16)
SINGLE_PANEL_K_34 = {
    (2, 1): ((1,), (0,)),
    (4, 1): ((1, 2, 3), (0, 0, 0)),
    (6, 1): ((1, 2, 3, 4), (0, 0, 0, 0)),
    (2, 2): ((1, 0, 1), (0, 1, 1)),
    (3, 2): ((1, 0, 1, 2), (0, 1, 1, 0)),
}

# 3/4-layer (k1, k2) offsets for the multi-panel codebook
MULTI_PANEL_K_34 = {
    (2, 1): ((1,), (0,)),
    (4, 1): ((1, 2, 3), (0, 0, 0)),
    (8, 1): ((1, 2, 3, 4), (0, 0, 0, 0)),
    (2, 2): ((1, 0, 1), (0, 1, 1)),
    (4, 2): ((1, 0, 1, 2), (0, 1, 1, 0)),
}

# Single-panel layer columns: (beam used by each column, lower-half
# coefficient of each column given the co-phase phi_n)
SINGLE_PANEL_COLUMNS: Dict[int, Tuple[Tuple[int, ...], Callable]] = {
    1: ((0,), lambda p: (p,)),
    2: ((0, 1), lambda p: (p, -p)),
    3: ((0, 1, 0), lambda p: (p, p, -p)),
    4: ((0, 1, 0, 1), lambda p: (p, p, -p, -p)),
    5: ((0, 0, 1, 1, 2), lambda p: (p, -p, 1, -1, 1)),
    6: ((0, 0, 1, 1, 2, 2), lambda p: (p, -p, p, -p, 1, -1)),
    7: ((0, 0, 1, 2, 2, 3, 3), lambda p: (p, -p, p, 1, -1, 1, -1)),
    8: ((0, 0, 1, 1, 2, 2, 3, 3), lambda p: (p, -p, p, -p, 1, -1, 1, -1)),
}

# Layer column signs of each row block [v, theta*v, phi*v, phi*theta*v]
# of the 3/4-layer codebook with P >= 16 (Tables 5.2.2.2.1-7/8)
HIGH_PORT_COLUMN_SIGNS = (
    (1, 1, 1, 1),
    (1, -1, 1, -1),
    (1, 1, -1, -1),
    (1, -1, -1, 1),
)

# Multi-panel layer columns and which columns flip sign on the odd
# (phi_n weighted) row blocks
MULTI_PANEL_COLUMNS = {
    1: ((0,), ()),
    2: ((0, 1), (1,)),
    3: ((0, 1, 0), (2,)),
    4: ((0, 1, 0, 1), (2, 3)),
}


def phi(n) -> complex:
    """Co-phasing factor exp(j*pi*n/2)"""
    return np.exp(1j * np.pi * n / 2)


def theta(p) -> complex:
    """Inter-half co-phasing factor exp(j*pi*p/4) for P >= 16"""
    return np.exp(1j * np.pi * p / 4)


def panel_phase_a(x) -> complex:
    return np.exp(1j * np.pi / 4 + 1j * np.pi * x / 2)


def panel_phase_b(x) -> complex:
    return np.exp(-1j * np.pi / 4 + 1j * np.pi * x / 2)


def steering_vector(l: int, m: int, n1: int, n2: int, o1: int, o2: int) -> np.ndarray:
    """
    2D DFT beam v_lm (length N1*N2, not normalised)

    The vertical (N2) phase varies fastest, matching the port ordering of
    TS 38.214 Section 5.2.2.2.1.
    """
    u_l = np.exp(2j * np.pi * l * np.arange(n1) / (o1 * n1))
    u_m = np.exp(2j * np.pi * m * np.arange(n2) / (o2 * n2))
    return np.kron(u_l, u_m)


def half_steering_vector(l: int, m: int, n1: int, n2: int, o1: int, o2: int) -> np.ndarray:
    """DFT beam v-bar_lm over N1/2 horizontal elements (3/4 layers, P >= 16)"""
    half = n1 // 2
    u_l = np.exp(2j * np.pi * l * np.arange(half) / (o1 * half))
    u_m = np.exp(2j * np.pi * m * np.arange(n2) / (o2 * n2))
    return np.kron(u_l, u_m)


# =============================================================================
# Codebook container
# =============================================================================

@dataclass(frozen=True, eq=False)
class Codebook:
    """Set of candidate precoders for one codebook configuration"""
    W: np.ndarray                           # (P, nLayers, *index_shape)
    codebook_type: CodebookType
    num_layers: int

    @property
    def is_single_panel(self) -> bool:
        return self.codebook_type is CodebookType.TYPE1_SINGLE_PANEL

    @property
    def index_names(self) -> Tuple[str, ...]:
        return SINGLE_PANEL_INDEX_NAMES if self.is_single_panel else MULTI_PANEL_INDEX_NAMES

    @property
    def num_ports(self) -> int:
        return self.W.shape[0]

    @property
    def index_shape(self) -> Tuple[int, ...]:
        return self.W.shape[2:]

    @property
    def num_i2(self) -> int:
        """Number of leading (i2 family) index dimensions"""
        return 1 if self.is_single_panel else 3

    @property
    def num_candidates(self) -> int:
        return int(np.prod(self.index_shape))

    def candidates(self) -> np.ndarray:
        """All precoders as a (C, P, nLayers) array, first index fastest"""
        P, nl = self.W.shape[:2]
        return self.W.reshape(P, nl, -1, order="F").transpose(2, 0, 1)

    def usable(self) -> np.ndarray:
        """Boolean (C,) mask of unrestricted (non-zero) candidates"""
        return np.any(self.candidates() != 0, axis=(1, 2))

    def unravel(self, flat_index: int) -> Tuple[int, ...]:
        """Flat candidate number -> 0-based index tuple"""
        return tuple(int(i) for i in np.unravel_index(flat_index, self.index_shape, order="F"))

    def ravel(self, indices: Sequence[int]) -> int:
        """0-based index tuple -> flat candidate number"""
        return int(np.ravel_multi_index(tuple(indices), self.index_shape, order="F"))

    def precoder(self, indices: Sequence[int]) -> np.ndarray:
        """Precoding matrix (P x nLayers) at a 0-based index tuple"""
        return self.W[(slice(None), slice(None)) + tuple(int(i) for i in indices)]


# =============================================================================
# Single-panel codebook
# =============================================================================

def _two_port_codebook(num_layers: int, csr: Tuple[int, ...]) -> np.ndarray:
    """TS 38.214 Table 5.2.2.2.1-1"""
    if num_layers == 1:
        entries = [np.array([[1], [c]]) / np.sqrt(2) for c in (1, 1j, -1, -1j)]
        bits = csr[0:4]
    elif num_layers == 2:
        entries = [
            np.array([[1, 1], [1, -1]]) / 2,
            np.array([[1, 1], [1j, -1j]]) / 2,
        ]
        bits = csr[4:6]
    else:
        raise ConfigurationError(
            f"Two CSI-RS ports support 1 or 2 layers, got {num_layers}"
        )
    W = np.zeros((2, num_layers, len(entries), 1, 1, 1), dtype=complex)
    for i2, (entry, allowed) in enumerate(zip(entries, bits)):
        if allowed:
            W[:, :, i2, 0, 0, 0] = entry
    return W


def _two_layer_offsets(n1: int, n2: int, o1: int, o2: int) -> Tuple[List[int], List[int]]:
    """(k1, k2) offsets for 2 layers, TS 38.214 Table 5.2.2.2.1-3"""
    if n1 > n2 > 1:
        return [0, o1, 0, 2 * o1], [0, 0, o2, 0]
    if n1 == n2:
        return [0, o1, 0, o1], [0, 0, o2, o2]
    if (n1, n2) == (2, 1):
        return [0, o1], [0, 0]
    return [0, o1, 2 * o1, 3 * o1], [0, 0, 0, 0]


class _SinglePanelLayout:
    """
    Index ranges and beam mapping of one single-panel layer table.

    beams(i2, i11, i12, i13) returns the (l, m) beams referenced by the
    precoder, the co-phase index n and the subset restriction bits.
    """

    def __init__(self, n1: int, n2: int, o1: int, o2: int, num_layers: int,
                 codebook_mode: int, num_ports: int):
        self.n1, self.n2, self.o1, self.o2 = n1, n2, o1, o2
        self.num_layers = num_layers
        self.mode = codebook_mode
        self.num_ports = num_ports
        self.high_port = num_layers in (3, 4) and num_ports >= 16
        self.shape, self._beam_fn = self._layout()

    def bit(self, l: int, m: int) -> int:
        return self.n2 * self.o2 * l + m

    def beams(self, i2: int, i11: int, i12: int, i13: int):
        return self._beam_fn(i2, i11, i12, i13)

    def _layout(self):
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        nl = self.num_layers

        if nl == 1:
            if self.mode == 1:
                def beams(i2, i11, i12, i13):
                    return [(i11, i12)], i2, [self.bit(i11, i12)]
                return (4, n1 * o1, n2 * o2, 1), beams

            def beams(i2, i11, i12, i13):
                l, m = self._mode2_beam(i2 // 4, i11, i12)
                return [(l, m)], i2 % 4, [self.bit(l, m)]
            i12_len = 1 if n2 == 1 else n2 * o2 // 2
            return (16, n1 * o1 // 2, i12_len, 1), beams

        if nl == 2:
            k1, k2 = _two_layer_offsets(n1, n2, o1, o2)
            if self.mode == 1:
                def beams(i2, i11, i12, i13):
                    lm = (i11, i12)
                    lm_prime = (i11 + k1[i13], i12 + k2[i13])
                    return [lm, lm_prime], i2, [self.bit(*lm)]
                return (2, n1 * o1, n2 * o2, len(k1)), beams

            def beams(i2, i11, i12, i13):
                l, m = self._mode2_beam(i2 // 2, i11, i12)
                lm_prime = (l + k1[i13], m + k2[i13])
                return [(l, m), lm_prime], i2 % 2, [self.bit(l, m)]
            i12_len = 1 if n2 == 1 else n2 * o2 // 2
            return (8, n1 * o1 // 2, i12_len, len(k1)), beams

        if nl in (3, 4):
            if self.high_port:
                def beams(i2, i11, i12, i13):
                    l, m = i11, i12
                    span = n2 * o2
                    bits = [
                        (span * (2 * l - 1) + m) % (n1 * o1 * n2 * o2),
                        span * 2 * l + m,
                        span * (2 * l + 1) + m,
                    ]
                    return [(l, m)], i2, bits
                return (2, n1 * o1 // 2, n2 * o2, 4), beams

            if (n1, n2) not in SINGLE_PANEL_K_34:
                raise ConfigurationError(
                    f"No {nl}-layer codebook for panel ({n1}, {n2}) with "
                    f"{self.num_ports} ports"
                )
            k1, k2 = SINGLE_PANEL_K_34[(n1, n2)]

            def beams(i2, i11, i12, i13):
                lm = (i11, i12)
                lm_prime = (i11 + k1[i13] * o1, i12 + k2[i13] * o2)
                return [lm, lm_prime], i2, [self.bit(*lm)]
            return (2, n1 * o1, n2 * o2, len(k1)), beams

        if nl in (5, 6):
            def beams(i2, i11, i12, i13):
                if n2 == 1:
                    lms = [(i11, 0), (i11 + o1, 0), (i11 + 2 * o1, 0)]
                else:
                    lms = [(i11, i12), (i11 + o1, i12), (i11 + o1, i12 + o2)]
                return lms, i2, [self.bit(*lms[0])]
            return (2, n1 * o1, 1 if n2 == 1 else n2 * o2, 1), beams

        if nl in (7, 8):
            if n2 == 1:
                i11_len = n1 * o1 // 2 if n1 == 4 else n1 * o1
                i12_len = 1
            else:
                i11_len = n1 * o1
                full = (n1, n2) == (2, 2) or (n1 > 2 and n2 > 2)
                i12_len = n2 * o2 if full else n2 * o2 // 2

            def beams(i2, i11, i12, i13):
                if n2 == 1:
                    lms = [(i11 + k * o1, 0) for k in range(4)]
                else:
                    lms = [
                        (i11, i12),
                        (i11 + o1, i12),
                        (i11, i12 + o2),
                        (i11 + o1, i12 + o2),
                    ]
                return lms, i2, [self.bit(*lms[0])]
            return (2, i11_len, i12_len, 1), beams

        raise ConfigurationError(f"Single-panel codebook supports 1-8 layers, got {nl}")

    def _mode2_beam(self, group: int, i11: int, i12: int) -> Tuple[int, int]:
        if self.n2 == 1:
            return 2 * i11 + group, 0
        dl, dm = MODE2_BEAM_OFFSETS[group]
        return 2 * i11 + dl, 2 * i12 + dm


def _single_panel_codebook(
    num_ports: int,
    panel: Tuple[int, int],
    oversampling: Tuple[int, int],
    num_layers: int,
    codebook_mode: int,
    csr: Tuple[int, ...],
    i2r: Tuple[int, ...],
) -> np.ndarray:
    if num_ports == 1:
        if num_layers != 1:
            raise ConfigurationError("A single CSI-RS port supports 1 layer only")
        return np.ones((1, 1, 1, 1, 1, 1), dtype=complex)
    if num_ports == 2:
        return _two_port_codebook(num_layers, csr)

    n1, n2 = panel
    o1, o2 = oversampling
    layout = _SinglePanelLayout(n1, n2, o1, o2, num_layers, codebook_mode, num_ports)
    scale = 1 / np.sqrt(num_layers * num_ports)
    W = np.zeros((num_ports, num_layers) + layout.shape, dtype=complex)

    for i2, i11, i12, i13 in np.ndindex(*layout.shape):
        lms, n, bits = layout.beams(i2, i11, i12, i13)
        if any(csr[b] == 0 for b in bits) or i2r[i2] == 0:
            continue
        phi_n = phi(n)

        if layout.high_port:
            v = half_steering_vector(*lms[0], n1, n2, o1, o2)
            blocks = (v, theta(i13) * v, phi_n * v, phi_n * theta(i13) * v)
            signs = np.array(HIGH_PORT_COLUMN_SIGNS)[:, :num_layers]
            W[:, :, i2, i11, i12, i13] = scale * np.vstack(
                [np.outer(block, row) for block, row in zip(blocks, signs)]
            )
            continue

        beam_of_column, lower = SINGLE_PANEL_COLUMNS[num_layers]
        vs = [steering_vector(l, m, n1, n2, o1, o2) for l, m in lms]
        upper = np.column_stack([vs[b] for b in beam_of_column])
        W[:, :, i2, i11, i12, i13] = scale * np.vstack(
            [upper, upper * np.asarray(lower(phi_n))]
        )

    return W


# =============================================================================
# Multi-panel codebook
# =============================================================================

def _multi_panel_block_weights(
    ng: int, mode: int, i20: int, i21: int, i22: int,
    i141: int, i142: int, i143: int,
) -> List[complex]:
    """Per-panel/polarisation co-phasing weights, one per row block"""
    if mode == 1:
        phi_n = phi(i20)
        weights = [1, phi_n]
        for p in (i141, i142, i143)[:ng - 1]:
            weights += [phi(p), phi_n * phi(p)]
        return weights
    return [
        1,
        phi(i20),
        panel_phase_a(i141) * panel_phase_b(i21),
        panel_phase_a(i142) * panel_phase_b(i22),
    ]


def _multi_panel_codebook(
    num_ports: int,
    panel: Tuple[int, int, int],
    oversampling: Tuple[int, int],
    num_layers: int,
    codebook_mode: int,
    csr: Tuple[int, ...],
) -> np.ndarray:
    ng, n1, n2 = panel
    o1, o2 = oversampling

    if num_layers == 1:
        k1, k2 = [0], [0]
    elif num_layers == 2:
        k1, k2 = _two_layer_offsets(n1, n2, o1, o2)
    elif num_layers in (3, 4):
        if (n1, n2) not in MULTI_PANEL_K_34:
            raise ConfigurationError(
                f"No {num_layers}-layer multi-panel codebook for panel {list(panel)}"
            )
        k1, k2 = MULTI_PANEL_K_34[(n1, n2)]
        k1 = [k * o1 for k in k1]
        k2 = [k * o2 for k in k2]
    else:
        raise ConfigurationError(f"Multi-panel codebook supports 1-4 layers, got {num_layers}")

    if codebook_mode == 1:
        i142_len = i143_len = 1 if ng == 2 else 4
        i21_len = i22_len = 1
    else:
        i142_len, i143_len = 4, 1
        i21_len = i22_len = 2
    i20_len = 4 if num_layers == 1 else 2
    i13_len = 1 if num_layers == 1 else len(k1)

    shape = (i20_len, i21_len, i22_len, n1 * o1, n2 * o2, i13_len, 4, i142_len, i143_len)
    W = np.zeros((num_ports, num_layers) + shape, dtype=complex)
    scale = 1 / np.sqrt(num_layers * num_ports)
    beam_of_column, flipped = MULTI_PANEL_COLUMNS[num_layers]
    odd_signs = np.ones(num_layers)
    odd_signs[list(flipped)] = -1

    for i11, i12, i13 in np.ndindex(n1 * o1, n2 * o2, i13_len):
        if csr[n2 * o2 * i11 + i12] == 0:
            continue
        vs = [
            steering_vector(i11, i12, n1, n2, o1, o2),
            steering_vector(i11 + k1[i13], i12 + k2[i13], n1, n2, o1, o2),
        ]
        columns = np.column_stack([vs[b] for b in beam_of_column])
        for i20, i21, i22, i141, i142, i143 in np.ndindex(
            i20_len, i21_len, i22_len, 4, i142_len, i143_len
        ):
            weights = _multi_panel_block_weights(
                ng, codebook_mode, i20, i21, i22, i141, i142, i143
            )
            blocks = [
                w * columns * (odd_signs if b % 2 else 1)
                for b, w in enumerate(weights)
            ]
            W[:, :, i20, i21, i22, i11, i12, i13, i141, i142, i143] = scale * np.vstack(blocks)

    return W


# =============================================================================
# Public API
# =============================================================================

@lru_cache(maxsize=128)
def generate_codebook(
    codebook_type: CodebookType,
    num_ports: int,
    panel_dimensions: Tuple[int, ...],
    oversampling: Tuple[int, int],
    num_layers: int,
    codebook_mode: int = 1,
    subset_restriction: Optional[Tuple[int, ...]] = None,
    i2_restriction: Optional[Tuple[int, ...]] = None,
) -> Codebook:
    """
    Generate a Type-1 codebook

    Args:
        codebook_type: Single-panel or multi-panel
        num_ports: Number of CSI-RS ports
        panel_dimensions: (N1, N2) or (Ng, N1, N2)
        oversampling: (O1, O2)
        num_layers: Number of transmission layers
        codebook_mode: 1 or 2
        subset_restriction: Codebook subset restriction bits (None: all allowed)
        i2_restriction: i2 restriction bits, single-panel only (None: all allowed)

    Returns:
        Codebook with a read-only precoder array
    """
    codebook_type = parse_enum(CodebookType, codebook_type, "CodebookType")
    panel = tuple(int(d) for d in panel_dimensions)
    n1, n2 = panel[-2:]
    o1, o2 = oversampling
    if subset_restriction is None:
        length = n1 * o1 * n2 * o2 if num_ports > 2 else (6 if num_ports == 2 else 1)
        subset_restriction = (1,) * length
    if i2_restriction is None:
        i2_restriction = (1,) * 16

    if codebook_type is CodebookType.TYPE1_SINGLE_PANEL:
        W = _single_panel_codebook(
            num_ports, panel, tuple(oversampling), num_layers, codebook_mode,
            tuple(subset_restriction), tuple(i2_restriction),
        )
    else:
        W = _multi_panel_codebook(
            num_ports, panel, tuple(oversampling), num_layers, codebook_mode,
            tuple(subset_restriction),
        )

    W.setflags(write=False)
    codebook = Codebook(W=W, codebook_type=codebook_type, num_layers=num_layers)
    logger.debug(
        f"Generated {codebook_type.value} codebook: {num_ports} ports, "
        f"{num_layers} layer(s), mode {codebook_mode}, "
        f"index shape {codebook.index_shape}"
    )
    return codebook


def codebook_for_report(report: ValidatedReport, num_layers: int) -> Codebook:
    """Codebook matching a validated report configuration"""
    return generate_codebook(
        report.codebook_type,
        report.num_ports,
        report.panel_dimensions,
        report.oversampling,
        num_layers,
        report.codebook_mode,
        report.codebook_subset_restriction,
        report.i2_restriction,
    )
