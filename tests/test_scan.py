import numpy as np
import pytest

from cropqtl.scan import perm_threshold, scanone, scanone_perm

from conftest import QTL_MARKER


@pytest.mark.parametrize("method", ["hk", "mr", "imp"])
def test_scan_peaks_at_simulated_qtl(f2_cross, method):
    scan = scanone(f2_cross, "qtl_trait", method=method, seed=1, n_draws=8)
    assert list(scan.columns) == ["marker", "chr", "pos", "lod"]
    assert scan["marker"].tolist() == f2_cross.markers
    assert (scan["lod"] >= 0).all()
    assert scan.loc[scan["lod"].idxmax(), "marker"] == QTL_MARKER
    assert scan["lod"].max() > 10


def test_scan_unlinked_chromosome_is_flat(f2_cross):
    scan = scanone(f2_cross, "qtl_trait")
    assert scan.loc[scan["chr"] == "2", "lod"].max() < 3


def test_scan_handles_missing_phenotypes(f2_cross, log_records):
    scan = scanone(f2_cross, "null_trait")
    assert np.isfinite(scan["lod"]).all()
    assert "missing phenotype excluded" in log_records.text


def test_scan_rejects_unknown_method(f2_cross):
    with pytest.raises(ValueError, match="Unknown scan method"):
        scanone(f2_cross, "qtl_trait", method="em")


def test_permutations_length_and_seed(f2_cross):
    first = scanone_perm(f2_cross, "null_trait", n_perm=120, seed=42)
    second = scanone_perm(f2_cross, "null_trait", n_perm=120, seed=42)
    other = scanone_perm(f2_cross, "null_trait", n_perm=120, seed=43)
    assert first.shape == (120,)
    np.testing.assert_array_equal(first, second)
    assert not np.array_equal(first, other)
    assert (first >= 0).all()


def test_permutations_require_positive_count(f2_cross):
    with pytest.raises(ValueError):
        scanone_perm(f2_cross, "qtl_trait", n_perm=0)


def test_perm_threshold_scalar_and_levels():
    perms = np.arange(1, 101, dtype=float)
    assert perm_threshold(perms, 0.05) == pytest.approx(np.quantile(perms, 0.95))
    levels = perm_threshold(perms, (0.05, 0.10))
    assert set(levels) == {0.05, 0.10}
    assert levels[0.05] > levels[0.10]
