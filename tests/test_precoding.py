"""
Tests for PRG precoding.
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.codebook import generate_codebook
from nr_csi.config import CodebookType, ConfigurationError
from nr_csi.pmi import PMISet
from nr_csi.precoding import prg_precode, precoders_from_pmi, prg_set

SP = CodebookType.TYPE1_SINGLE_PANEL


def layer_indices(grid, k, l, num_layers):
    """0-based (K, L, layers) linear indices, one row per RE."""
    k = np.asarray(k)[:, np.newaxis]
    l = np.asarray(l)[:, np.newaxis]
    layers = np.arange(num_layers)[np.newaxis, :]
    return np.ravel_multi_index((k, l, layers), (grid[0], grid[1], num_layers))


class TestPRGSet:
    """Test RB to PRG mapping."""

    def test_two_rb_bundles(self):
        """Test 52 RBs over 26 PRGs."""
        prg = prg_set(52, 0, 26)
        assert prg.shape == (52,)
        assert prg[:4].tolist() == [0, 0, 1, 1]
        assert prg[-1] == 25

    def test_offset_grid(self):
        """Test PRG boundaries aligned to CRB 0."""
        assert prg_set(4, 1, 3).tolist() == [0, 1, 1, 2]

    def test_single_prg(self):
        """Test one PRG covers the whole carrier."""
        assert np.all(prg_set(10, 3, 1) == 0)


class TestPRGPrecode:
    """Test prg_precode."""

    def test_wideband_precoder(self):
        """Test a 2-D precoder applies to every RE."""
        grid = (48, 14)
        F = np.array([[1, 1j], [1, -1j]]) / 2
        symbols = np.array([[1, 0], [0, 1], [1, 1]], dtype=complex)
        indices = layer_indices(grid, [0, 13, 40], [2, 2, 9], 2)
        out, out_ind = prg_precode(grid, 0, symbols, indices, F)
        assert out.shape == (3, 2)
        assert np.allclose(out, symbols @ F)
        assert out_ind.shape == (3, 2)

    def test_per_prg_precoders(self):
        """Test each RE uses the precoder of its PRG."""
        grid = (48, 14)
        F = np.zeros((1, 2, 2), dtype=complex)
        F[:, :, 0] = [1, 1]
        F[:, :, 1] = [1, -1]
        symbols = np.ones((2, 1), dtype=complex)
        indices = layer_indices(grid, [0, 36], [2, 2], 1)
        out, _ = prg_precode(grid, 0, symbols, indices, F)
        assert np.allclose(out, [[1, 1], [1, -1]])

    def test_antenna_indices(self):
        """Test antenna indices address the same RE on every port."""
        grid = (48, 14)
        F = np.ones((1, 2, 1))
        indices = layer_indices(grid, [36], [2], 1)
        _, out_ind = prg_precode(grid, 0, np.ones((1, 1)), indices, F)
        assert out_ind.tolist() == [[36 * 28 + 4, 36 * 28 + 5]]

    def test_inputs_not_modified(self):
        """Test input arrays are left untouched."""
        grid = (48, 14)
        F = np.ones((2, 4, 2), dtype=complex)
        symbols = np.arange(8, dtype=complex).reshape(4, 2)
        indices = layer_indices(grid, [0, 12, 24, 36], [0, 1, 2, 3], 2)
        F_copy, sym_copy, ind_copy = F.copy(), symbols.copy(), indices.copy()
        prg_precode(grid, 0, symbols, indices, F)
        assert np.array_equal(F, F_copy)
        assert np.array_equal(symbols, sym_copy)
        assert np.array_equal(indices, ind_copy)

    def test_partial_grid(self):
        """Test a grid that is not a whole number of RBs."""
        with pytest.raises(ConfigurationError):
            prg_precode((50, 14), 0, np.ones((1, 1)), [0], np.ones((1, 2)))

    def test_shape_mismatch(self):
        """Test symbol and index arrays of different length."""
        with pytest.raises(ConfigurationError):
            prg_precode((48, 14), 0, np.ones((2, 1)), [0], np.ones((1, 2)))


class TestPrecodersFromPMI:
    """Test precoders_from_pmi."""

    def test_wideband(self):
        """Test a wideband PMI fills every PRG."""
        codebook = generate_codebook(SP, 4, (2, 1), (4, 1), 1)
        pmi_set = PMISet(i1=np.array([2.0, 1.0, 1.0]), i2=np.array([3.0]))
        F = precoders_from_pmi(codebook, pmi_set, 52, 2)
        assert F.shape == (1, 4, 26)
        expected = codebook.precoder((2, 1, 0, 0)).T
        for g in range(26):
            assert np.allclose(F[:, :, g], expected)

    def test_subband(self):
        """Test PRGs of a subband share its precoder."""
        codebook = generate_codebook(SP, 4, (2, 1), (4, 1), 1)
        pmi_set = PMISet(i1=np.ones(3), i2=np.array([1.0, 2.0, 3.0]))
        F = precoders_from_pmi(codebook, pmi_set, 12, 2)
        assert F.shape == (1, 4, 6)
        for sb in range(3):
            expected = codebook.precoder((sb, 0, 0, 0)).T
            assert np.allclose(F[:, :, 2 * sb], expected)
            assert np.allclose(F[:, :, 2 * sb + 1], expected)

    def test_missing_subband(self):
        """Test a NaN subband gets a zero precoder."""
        codebook = generate_codebook(SP, 4, (2, 1), (4, 1), 1)
        pmi_set = PMISet(i1=np.ones(3), i2=np.array([1.0, np.nan]))
        F = precoders_from_pmi(codebook, pmi_set, 8, 2)
        assert np.any(F[:, :, :2] != 0)
        assert np.all(F[:, :, 2:] == 0)

    def test_single_port(self):
        """Test one port gives a unit precoder."""
        codebook = generate_codebook(SP, 1, (1, 1), (1, 1), 1)
        F = precoders_from_pmi(codebook, PMISet.unavailable(False, 1), 52, 2)
        assert F.shape == (1, 1, 1)
        assert F[0, 0, 0] == 1

    def test_unavailable_pmi(self):
        """Test an all-NaN PMI raises."""
        codebook = generate_codebook(SP, 4, (2, 1), (4, 1), 1)
        with pytest.raises(ConfigurationError):
            precoders_from_pmi(codebook, PMISet.unavailable(False, 1), 52, 2)

    def test_round_trip_precoding(self):
        """Test per-PRG precoders feed prg_precode."""
        codebook = generate_codebook(SP, 2, (1, 1), (1, 1), 2)
        pmi_set = PMISet(i1=np.ones(3), i2=np.array([2.0]))
        F = precoders_from_pmi(codebook, pmi_set, 4, 2)
        grid = (48, 14)
        symbols = np.array([[1, 0]], dtype=complex)
        indices = layer_indices(grid, [30], [3], 2)
        out, _ = prg_precode(grid, 0, symbols, indices, F)
        assert np.allclose(out[0], codebook.precoder((1, 0, 0, 0))[:, 0])
