"""
Pytest configuration and shared fixtures for NR CSI feedback tests.

Provides:
- Carrier and CSI report configuration fixtures
- CSI-RS resource generators (one RE per RB, optional CDM groups)
- Channel estimate generators (flat, beam-aligned, frequency selective)
"""

import pytest
import numpy as np
from typing import Optional, Sequence
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import (
    CarrierConfig,
    CSIRSConfig,
    CSIRSResource,
    CSIReportConfig,
    ReportingMode,
)


# ==============================================================================
# Configuration Fixtures
# ==============================================================================

@pytest.fixture
def carrier() -> CarrierConfig:
    """52 RB carrier at 15 kHz."""
    return CarrierConfig(n_size_grid=52)


@pytest.fixture
def small_carrier() -> CarrierConfig:
    """4 RB carrier for fast REST tests."""
    return CarrierConfig(n_size_grid=4)


@pytest.fixture
def wideband_report() -> CSIReportConfig:
    """Wideband PMI/CQI report over the whole 52 RB carrier."""
    return CSIReportConfig(n_size_bwp=52, n_start_bwp=0)


@pytest.fixture
def four_port_report() -> CSIReportConfig:
    """Wideband report for a 4-port (2, 1) panel."""
    return CSIReportConfig(n_size_bwp=52, n_start_bwp=0, panel_dimensions=[2, 1])


@pytest.fixture
def subband_report() -> CSIReportConfig:
    """Subband PMI and CQI report, 4 RB subbands, 4-port panel."""
    return CSIReportConfig(
        n_size_bwp=52,
        n_start_bwp=0,
        panel_dimensions=[2, 1],
        pmi_mode=ReportingMode.SUBBAND,
        cqi_mode=ReportingMode.SUBBAND,
        subband_size=4,
    )


# ==============================================================================
# CSI-RS Generators
# ==============================================================================

class CSIRSGenerator:
    """Generate CSI-RS resources for testing."""

    @staticmethod
    def indices(
        carrier: CarrierConfig,
        num_ports: int,
        symbol: int = 5,
        rbs: Optional[Sequence[int]] = None,
        offset: int = 0,
    ) -> np.ndarray:
        """
        One RE per RB and port on a single OFDM symbol.

        Args:
            carrier: Carrier configuration
            num_ports: Number of CSI-RS ports
            symbol: OFDM symbol carrying the CSI-RS
            rbs: RBs carrying the CSI-RS (default: all)
            offset: Subcarrier offset of port 0 within the RB

        Returns:
            (N, 3) array of (subcarrier, symbol, port) subscripts
        """
        if rbs is None:
            rbs = range(carrier.n_size_grid)
        rows = [
            (12 * rb + (offset + port) % 12, symbol, port)
            for port in range(num_ports)
            for rb in rbs
        ]
        return np.array(rows, dtype=int).reshape(-1, 3)

    @staticmethod
    def cdm4_indices(carrier: CarrierConfig, num_ports: int, symbol: int = 5) -> np.ndarray:
        """
        CDM4 groups (2 subcarriers x 2 symbols) in every RB.

        Rows are ordered by port, then symbol, then subcarrier.
        """
        rows = []
        for port in range(num_ports):
            for l in (symbol, symbol + 1):
                for rb in range(carrier.n_size_grid):
                    rows += [(12 * rb, l, port), (12 * rb + 1, l, port)]
        return np.array(rows, dtype=int)

    @staticmethod
    def config(
        carrier: CarrierConfig,
        num_ports: int,
        symbol: int = 5,
        rbs: Optional[Sequence[int]] = None,
    ) -> CSIRSConfig:
        """Single NZP resource without CDM."""
        resource = CSIRSResource(
            indices=CSIRSGenerator.indices(carrier, num_ports, symbol, rbs),
            num_ports=num_ports,
        )
        return CSIRSConfig(resources=[resource])


@pytest.fixture
def csirs_generator() -> CSIRSGenerator:
    """Provide CSI-RS generator."""
    return CSIRSGenerator()


# ==============================================================================
# Channel Generators
# ==============================================================================

class ChannelGenerator:
    """Generate channel estimates (K, L, Rx, ports) for testing."""

    @staticmethod
    def flat(carrier: CarrierConfig, matrix: np.ndarray) -> np.ndarray:
        """Same Rx x ports matrix on every RE."""
        matrix = np.atleast_2d(np.asarray(matrix, dtype=complex))
        K, L = carrier.num_subcarriers, carrier.symbols_per_slot
        return np.broadcast_to(matrix, (K, L) + matrix.shape).copy()

    @staticmethod
    def random_flat(
        carrier: CarrierConfig, num_rx: int, num_ports: int, seed: int = 0
    ) -> np.ndarray:
        """Flat Rayleigh channel."""
        rng = np.random.default_rng(seed)
        matrix = (
            rng.standard_normal((num_rx, num_ports))
            + 1j * rng.standard_normal((num_rx, num_ports))
        ) / np.sqrt(2)
        return ChannelGenerator.flat(carrier, matrix)

    @staticmethod
    def beam_aligned(carrier: CarrierConfig, precoder: np.ndarray) -> np.ndarray:
        """Single-Rx channel matched to a 1-layer precoder (H w = |w|^2)."""
        w = np.asarray(precoder).reshape(-1)
        return ChannelGenerator.flat(carrier, w.conj()[np.newaxis, :])

    @staticmethod
    def frequency_selective(
        carrier: CarrierConfig,
        num_rx: int,
        num_ports: int,
        num_taps: int = 4,
        seed: int = 0,
    ) -> np.ndarray:
        """Tapped delay line channel, constant over the slot."""
        rng = np.random.default_rng(seed)
        taps = (
            rng.standard_normal((num_taps, num_rx, num_ports))
            + 1j * rng.standard_normal((num_taps, num_rx, num_ports))
        ) / np.sqrt(2 * num_taps)
        K, L = carrier.num_subcarriers, carrier.symbols_per_slot
        k = np.arange(K)
        phases = np.exp(-2j * np.pi * np.outer(k, np.arange(num_taps)) * 8 / K)
        H = np.einsum("kt,trp->krp", phases, taps)
        return np.repeat(H[:, np.newaxis], L, axis=1)


@pytest.fixture
def channel_generator() -> ChannelGenerator:
    """Provide channel generator."""
    return ChannelGenerator()


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    if config.getoption("-m"):
        # If marker specified, use default behavior
        return

    # Add skip marker to slow tests by default
    skip_slow = pytest.mark.skip(reason="slow test - use -m slow to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
