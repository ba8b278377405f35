"""
Tests for downlink PMI selection.

Tests:
- Beam-aligned channels select the matching codebook entry
- Wideband, subband and PRG reporting
- NaN reporting for missing CSI-RS and restricted codebooks
- Multi-panel index layout
- PMIInfo SINR views
"""

import pytest
import numpy as np
import dataclasses
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.codebook import generate_codebook
from nr_csi.config import (
    CarrierConfig,
    CodebookType,
    ConfigurationError,
    CSIRSConfig,
    CSIReportConfig,
)
from nr_csi.pmi import PMISet, select_pmi


class TestSinglePortPMI:
    """Test the trivial single-port PMI."""

    def test_single_port(self, carrier, wideband_report, csirs_generator):
        """Test one port reports i1 = [1, 1, 1] and i2 = 1."""
        csirs = csirs_generator.config(carrier, 1)
        H = np.ones((624, 14), dtype=complex)
        pmi_set, info = select_pmi(carrier, csirs, wideband_report, 1, H, 0.01)
        assert pmi_set.i1.tolist() == [1, 1, 1]
        assert pmi_set.i2.tolist() == [1]
        assert info.W.shape == (1, 1, 1, 1, 1, 1)


class TestBeamAlignedPMI:
    """Test PMI selection on channels matched to a codebook entry."""

    @pytest.mark.parametrize("i2,i11", [(0, 0), (2, 3), (3, 7), (1, 5)])
    def test_selects_matching_entry(self, carrier, four_port_report, csirs_generator,
                                    channel_generator, i2, i11):
        """Test the matching precoder wins."""
        codebook = generate_codebook(CodebookType.TYPE1_SINGLE_PANEL, 4, (2, 1), (4, 1), 1)
        H = channel_generator.beam_aligned(carrier, codebook.precoder((i2, i11, 0, 0)))
        csirs = csirs_generator.config(carrier, 4)

        pmi_set, _ = select_pmi(carrier, csirs, four_port_report, 1, H, 0.01)

        assert pmi_set.i1.tolist() == [i11 + 1, 1, 1]
        assert pmi_set.i2.tolist() == [i2 + 1]

    def test_two_port(self, carrier, wideband_report, csirs_generator, channel_generator):
        """Test 2-port PMI picks the co-phase matching the channel."""
        w = np.array([1, 1j]) / np.sqrt(2)
        H = channel_generator.beam_aligned(carrier, w)
        csirs = csirs_generator.config(carrier, 2)
        pmi_set, _ = select_pmi(carrier, csirs, wideband_report, 1, H, 0.01)
        assert pmi_set.i2.tolist() == [2]

    def test_subband_flat_channel(self, carrier, subband_report, csirs_generator,
                                  channel_generator):
        """Test every subband of a flat channel reports the wideband i2."""
        codebook = generate_codebook(CodebookType.TYPE1_SINGLE_PANEL, 4, (2, 1), (4, 1), 1)
        H = channel_generator.beam_aligned(carrier, codebook.precoder((2, 3, 0, 0)))
        csirs = csirs_generator.config(carrier, 4)

        pmi_set, info = select_pmi(carrier, csirs, subband_report, 1, H, 0.01)

        assert pmi_set.num_subbands == 13
        assert np.all(pmi_set.i2 == 3)
        assert info.subband_info.num_subbands == 13

    def test_prg_reporting(self, carrier, four_port_report, csirs_generator,
                           channel_generator):
        """Test PRG size 2 reports one i2 per PRG."""
        codebook = generate_codebook(CodebookType.TYPE1_SINGLE_PANEL, 4, (2, 1), (4, 1), 1)
        H = channel_generator.beam_aligned(carrier, codebook.precoder((1, 2, 0, 0)))
        csirs = csirs_generator.config(carrier, 4)
        report = dataclasses.replace(four_port_report, prg_size=2)

        pmi_set, _ = select_pmi(carrier, csirs, report, 1, H, 0.01)

        assert pmi_set.i2.shape == (26,)
        assert np.all(pmi_set.i2 == 2)


class TestNaNReporting:
    """Test unavailable CSI is reported as NaN."""

    def test_subband_without_csirs(self, carrier, subband_report, csirs_generator,
                                   channel_generator):
        """Test subbands without CSI-RS report NaN i2."""
        csirs = csirs_generator.config(carrier, 4, rbs=range(8))
        H = channel_generator.random_flat(carrier, 2, 4, seed=3)

        pmi_set, info = select_pmi(carrier, csirs, subband_report, 1, H, 0.01)

        assert not np.any(np.isnan(pmi_set.i1))
        assert not np.any(np.isnan(pmi_set.i2[:2]))
        assert np.all(np.isnan(pmi_set.i2[2:]))
        assert pmi_set.indices(5) is None
        assert np.all(np.isnan(info.subband_sinr[2:]))

    def test_no_csirs_in_bwp(self, carrier, csirs_generator):
        """Test no CSI-RS in the BWP gives an all-NaN PMI without checking H."""
        csirs = csirs_generator.config(carrier, 4, rbs=range(30, 52))
        report = CSIReportConfig(n_size_bwp=24, n_start_bwp=0, panel_dimensions=[2, 1])
        H = np.zeros((10, 14, 1, 4))

        pmi_set, info = select_pmi(carrier, csirs, report, 1, H, 0.01)

        assert np.all(np.isnan(pmi_set.i1))
        assert np.all(np.isnan(pmi_set.i2))
        assert not pmi_set.is_valid
        assert info.res.count == 0

    def test_all_restricted(self, carrier, csirs_generator, channel_generator):
        """Test an all-zero subset restriction gives NaN."""
        report = CSIReportConfig(
            n_size_bwp=52, n_start_bwp=0, panel_dimensions=[2, 1],
            codebook_subset_restriction=[0] * 8,
        )
        csirs = csirs_generator.config(carrier, 4)
        H = channel_generator.random_flat(carrier, 1, 4)

        pmi_set, _ = select_pmi(carrier, csirs, report, 1, H, 0.01)

        assert np.all(np.isnan(pmi_set.i1))

    def test_restricted_entry_never_selected(self, carrier, csirs_generator,
                                             channel_generator):
        """Test a restricted beam loses even when it matches the channel."""
        codebook = generate_codebook(CodebookType.TYPE1_SINGLE_PANEL, 4, (2, 1), (4, 1), 1)
        H = channel_generator.beam_aligned(carrier, codebook.precoder((0, 0, 0, 0)))
        report = CSIReportConfig(
            n_size_bwp=52, n_start_bwp=0, panel_dimensions=[2, 1],
            codebook_subset_restriction=[0] + [1] * 7,
        )
        csirs = csirs_generator.config(carrier, 4)

        pmi_set, _ = select_pmi(carrier, csirs, report, 1, H, 0.01)

        assert pmi_set.i1[0] != 1

    def test_zero_noise_variance(self, carrier, four_port_report, csirs_generator,
                                 channel_generator):
        """Test nvar = 0 is clipped and SINR stays finite."""
        H = channel_generator.random_flat(carrier, 2, 4, seed=11)
        csirs = csirs_generator.config(carrier, 4)

        pmi_set, info = select_pmi(carrier, csirs, four_port_report, 2, H, 0)

        assert pmi_set.is_valid
        sinr = info.layer_sinr_per_subband(0, pmi_set.indices(0))
        assert np.all(np.isfinite(sinr))


class TestMultiPanelPMI:
    """Test multi-panel PMI layout."""

    @pytest.fixture
    def report(self):
        return CSIReportConfig(
            n_size_bwp=52, n_start_bwp=0,
            codebook_type=CodebookType.TYPE1_MULTI_PANEL,
            panel_dimensions=[2, 2, 1],
        )

    def test_index_layout(self, carrier, report, csirs_generator, channel_generator):
        """Test i1 has six entries and i2 is a 3 x subbands matrix."""
        csirs = csirs_generator.config(carrier, 8)
        H = channel_generator.random_flat(carrier, 2, 8, seed=5)

        pmi_set, info = select_pmi(carrier, csirs, report, 1, H, 0.1)

        assert pmi_set.is_multi_panel
        assert pmi_set.i1.shape == (6,)
        assert pmi_set.i2.shape == (3, 1)
        assert 1 <= pmi_set.i2[0, 0] <= 4
        assert pmi_set.i2[1, 0] == 1 and pmi_set.i2[2, 0] == 1
        assert info.sinr_per_subband.shape == (1, 1) + info.codebook.index_shape

    def test_matching_entry(self, carrier, report, csirs_generator, channel_generator):
        """Test the matching multi-panel precoder wins."""
        codebook = generate_codebook(CodebookType.TYPE1_MULTI_PANEL, 8, (2, 2, 1), (4, 1), 1)
        indices = (1, 0, 0, 5, 0, 0, 2, 0, 0)
        H = channel_generator.beam_aligned(carrier, codebook.precoder(indices))
        csirs = csirs_generator.config(carrier, 8)

        pmi_set, _ = select_pmi(carrier, csirs, report, 1, H, 0.01)

        assert pmi_set.indices(0) == indices

    def test_too_many_layers(self, carrier, report, csirs_generator, channel_generator):
        """Test 5 layers are rejected for multi-panel."""
        csirs = csirs_generator.config(carrier, 8)
        H = channel_generator.random_flat(carrier, 8, 8)
        with pytest.raises(ConfigurationError):
            select_pmi(carrier, csirs, report, 5, H, 0.1)


class TestPMIInfo:
    """Test PMIInfo SINR views."""

    def test_dense_sinr_per_re(self, carrier, four_port_report, csirs_generator,
                               channel_generator):
        """Test dense per-RE SINR is NaN off the CSI-RS REs."""
        H = channel_generator.random_flat(carrier, 1, 4)
        csirs = csirs_generator.config(carrier, 4, symbol=3)

        pmi_set, info = select_pmi(carrier, csirs, four_port_report, 1, H, 0.1)

        dense = info.sinr_per_re
        assert dense.shape == (624, 14, 1) + info.codebook.index_shape
        assert np.all(np.isnan(dense[:, 5]))
        assert not np.any(np.isnan(dense[0, 3]))
        idx = pmi_set.indices(0)
        assert np.allclose(dense[0, 3, :][(slice(None),) + idx], info.layer_sinr_per_re(idx)[0])

    def test_duplicate_res_ignored(self, carrier, four_port_report, csirs_generator,
                                   channel_generator):
        """Test repeated resources do not change the result."""
        H = channel_generator.frequency_selective(carrier, 2, 4, seed=2)
        single = csirs_generator.config(carrier, 4)
        double = CSIRSConfig(resources=single.resources * 2)

        a, info_a = select_pmi(carrier, single, four_port_report, 1, H, 0.1)
        b, info_b = select_pmi(carrier, double, four_port_report, 1, H, 0.1)

        assert info_a.res.count == info_b.res.count
        assert np.array_equal(a.i1, b.i1)
        assert np.array_equal(a.i2, b.i2)

    def test_to_dict(self):
        """Test NaN entries serialise as None."""
        pmi_set = PMISet(i1=np.array([1.0, 2.0, 1.0]), i2=np.array([3.0, np.nan]))
        assert pmi_set.to_dict() == {"i1": [1, 2, 1], "i2": [3, None]}

    def test_unavailable(self):
        """Test all-NaN constructors."""
        multi = PMISet.unavailable(True, 4)
        assert multi.i1.shape == (6,)
        assert multi.i2.shape == (3, 4)
        assert not multi.is_valid


class TestValidationErrors:
    """Test invalid inputs raise before computation."""

    def test_channel_shape(self, carrier, four_port_report, csirs_generator):
        """Test a wrong channel size raises."""
        csirs = csirs_generator.config(carrier, 4)
        with pytest.raises(ConfigurationError):
            select_pmi(carrier, csirs, four_port_report, 1, np.ones((600, 14, 1, 4)), 0.1)

    def test_layers_exceed_rx(self, carrier, four_port_report, csirs_generator,
                              channel_generator):
        """Test more layers than receive antennas raises."""
        csirs = csirs_generator.config(carrier, 4)
        H = channel_generator.random_flat(carrier, 1, 4)
        with pytest.raises(ConfigurationError):
            select_pmi(carrier, csirs, four_port_report, 2, H, 0.1)

    def test_pmi_mode_string(self, csirs_generator, channel_generator):
        """Test reporting modes given as strings."""
        carrier = CarrierConfig(n_size_grid=24)
        report = CSIReportConfig(
            n_size_bwp=24, n_start_bwp=0, panel_dimensions=[2, 1],
            pmi_mode="subband", subband_size=8,
        )
        csirs = csirs_generator.config(carrier, 4)
        H = channel_generator.random_flat(carrier, 1, 4)
        pmi_set, info = select_pmi(carrier, csirs, report, 1, H, 0.1)
        assert info.subband_info.num_subbands == 3
        assert pmi_set.i2.shape == (3,)
