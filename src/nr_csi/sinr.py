"""
Post-Precoding SINR Evaluation

Linear per-layer SINR of a linear MMSE receiver for a precoded MIMO
channel:

    sinr_k = Re(1 / diag(D)_k - 1),   D = nvar * I / (W^H H^H H W + nvar * I)

evaluated per resource element. Includes a vectorised form over many
resource elements and candidate precoders, and the layer-to-codeword
mapping used for CQI.

References:
- 3GPP TS 38.211: Section 7.3.1.3 (Layer mapping)
"""

from typing import List

import numpy as np
from scipy import linalg


def precoded_sinr(H: np.ndarray, nvar: float, W: np.ndarray) -> np.ndarray:
    """
    Per-layer SINR for one resource element

    Args:
        H: Channel matrix (receive antennas x ports)
        nvar: Noise variance (already clipped to a positive floor)
        W: Precoding matrix (ports x layers)

    Returns:
        Linear SINR per layer
    """
    H = np.atleast_2d(H)
    W = np.atleast_2d(W)
    HW = H @ W
    noise = nvar * np.eye(W.shape[1])
    D = linalg.solve(HW.conj().T @ HW + noise, noise, assume_a="her")
    return np.real(1 / np.diag(D) - 1)


def precoded_sinr_batch(H: np.ndarray, nvar: float, W: np.ndarray) -> np.ndarray:
    """
    Per-layer SINR for many resource elements and candidate precoders

    Args:
        H: Channels (N, receive antennas, ports)
        nvar: Noise variance
        W: Candidate precoders (C, ports, layers)

    Returns:
        Linear SINR array of shape (N, C, layers)
    """
    num_layers = W.shape[-1]
    HW = np.einsum("nrp,cpl->ncrl", H, W)
    gram = np.einsum("ncrk,ncrl->nckl", HW.conj(), HW)
    gram += nvar * np.eye(num_layers)
    inv_diag = np.diagonal(np.linalg.inv(gram), axis1=-2, axis2=-1)
    return np.real(1 / (nvar * inv_diag) - 1)


def layers_per_codeword(num_layers: int) -> List[int]:
    """Layer split across codewords (one codeword up to 4 layers)"""
    if num_layers <= 4:
        return [num_layers]
    first = num_layers // 2
    return [first, num_layers - first]


def codeword_sinr(layer_sinr: np.ndarray) -> np.ndarray:
    """
    Sum layer SINRs into codeword SINRs along the last axis

    NaN layers propagate into the codeword they map to.
    """
    layer_sinr = np.asarray(layer_sinr, dtype=float)
    split = np.cumsum(layers_per_codeword(layer_sinr.shape[-1]))[:-1]
    parts = np.split(layer_sinr, split, axis=-1)
    return np.stack([p.sum(axis=-1) for p in parts], axis=-1)
