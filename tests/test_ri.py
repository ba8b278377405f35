"""
Tests for rank indicator selection.
"""

import pytest
import numpy as np
import dataclasses
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import CodebookType, CSIReportConfig
from nr_csi.ri import select_ri


class TestSelectRI:
    """Test select_ri."""

    def test_rank_restriction(self, carrier, csirs_generator, channel_generator):
        """Test a rank-1-only restriction always reports RI = 1."""
        report = CSIReportConfig(
            n_size_bwp=52, n_start_bwp=0, panel_dimensions=[2, 1],
            ri_restriction=[1, 0, 0, 0, 0, 0, 0, 0],
        )
        csirs = csirs_generator.config(carrier, 4)
        for seed in range(3):
            H = channel_generator.random_flat(carrier, 2, 4, seed=seed)
            ri, pmi_set = select_ri(carrier, csirs, report, H, 0.01)
            assert ri == 1
            assert pmi_set.is_valid

    @pytest.mark.parametrize("seed", range(4))
    def test_rank_bound(self, carrier, four_port_report, csirs_generator,
                        channel_generator, seed):
        """Test RI never exceeds min(Rx, ports)."""
        csirs = csirs_generator.config(carrier, 4)
        H = channel_generator.frequency_selective(carrier, 2, 4, seed=seed)
        ri, _ = select_ri(carrier, csirs, four_port_report, H, 0.05)
        assert ri in (1, 2)

    def test_orthogonal_channel_full_rank(self, carrier, wideband_report,
                                          csirs_generator, channel_generator):
        """Test an identity 2x2 channel at high SNR selects rank 2."""
        H = channel_generator.flat(carrier, np.eye(2))
        csirs = csirs_generator.config(carrier, 2)
        ri, pmi_set = select_ri(carrier, csirs, wideband_report, H, 0.01)
        assert ri == 2
        assert pmi_set.i1.tolist() == [1, 1, 1]

    def test_low_snr_falls_back_to_rank_one(self, carrier, wideband_report,
                                            csirs_generator, channel_generator):
        """Test layers below 0 dB do not count, keeping rank 1."""
        H = channel_generator.flat(carrier, np.eye(2))
        csirs = csirs_generator.config(carrier, 2)
        ri, _ = select_ri(carrier, csirs, wideband_report, H, 100.0)
        assert ri == 1

    def test_single_rx(self, carrier, four_port_report, csirs_generator, channel_generator):
        """Test one receive antenna limits the rank to 1."""
        H = channel_generator.random_flat(carrier, 1, 4)
        csirs = csirs_generator.config(carrier, 4)
        ri, _ = select_ri(carrier, csirs, four_port_report, H, 0.01)
        assert ri == 1

    def test_no_csirs(self, carrier, csirs_generator):
        """Test no CSI-RS in the BWP reports NaN."""
        csirs = csirs_generator.config(carrier, 4, rbs=range(40, 52))
        report = CSIReportConfig(n_size_bwp=24, n_start_bwp=0, panel_dimensions=[2, 1])
        ri, pmi_set = select_ri(carrier, csirs, report, np.zeros((624, 14, 2, 4)), 0.01)
        assert np.isnan(ri)
        assert not pmi_set.is_valid

    def test_no_admissible_rank(self, carrier, four_port_report, csirs_generator,
                                channel_generator):
        """Test a restriction excluding every supported rank reports NaN."""
        report = dataclasses.replace(four_port_report, ri_restriction=[0, 0, 1, 0, 0, 0, 0, 0])
        H = channel_generator.random_flat(carrier, 2, 4)
        csirs = csirs_generator.config(carrier, 4)
        ri, _ = select_ri(carrier, csirs, report, H, 0.01)
        assert np.isnan(ri)

    def test_prg_ignored(self, carrier, four_port_report, csirs_generator, channel_generator):
        """Test PRG configuration does not affect rank selection."""
        H = channel_generator.random_flat(carrier, 2, 4, seed=9)
        csirs = csirs_generator.config(carrier, 4)
        ri_a, pmi_a = select_ri(carrier, csirs, four_port_report, H, 0.01)
        ri_b, pmi_b = select_ri(
            carrier, csirs, dataclasses.replace(four_port_report, prg_size=4), H, 0.01
        )
        assert ri_a == ri_b
        assert np.array_equal(pmi_a.i1, pmi_b.i1)
        assert pmi_b.i2.shape == (1,)

    def test_multi_panel_rank_bound(self, carrier, csirs_generator, channel_generator):
        """Test multi-panel ranks stop at 4."""
        report = CSIReportConfig(
            n_size_bwp=52, n_start_bwp=0,
            codebook_type=CodebookType.TYPE1_MULTI_PANEL,
            panel_dimensions=[2, 2, 1],
            ri_restriction=[1, 1, 0, 0],
        )
        H = channel_generator.random_flat(carrier, 8, 8, seed=4)
        csirs = csirs_generator.config(carrier, 8)
        ri, pmi_set = select_ri(carrier, csirs, report, H, 0.1)
        assert ri in (1, 2)
        assert pmi_set.i1.shape == (6,)
