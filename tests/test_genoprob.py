import numpy as np
import pytest

from cropqtl.cross import AA, BB
from cropqtl.genoprob import calc_genoprob, sim_geno


def test_genoprob_shape_and_normalised(f2_cross):
    prob = calc_genoprob(f2_cross)
    assert set(prob) == {"1", "2"}
    assert prob["1"].shape == (150, 8, 3)
    np.testing.assert_allclose(prob["1"].sum(axis=2), 1.0)


def test_genoprob_follows_typed_genotypes(f2_cross):
    prob = calc_genoprob(f2_cross)
    codes = f2_cross.geno[f2_cross.chrom_markers("1")].values
    typed = (codes >= AA) & (codes <= BB)
    observed = np.take_along_axis(prob["1"], np.clip(codes.astype(np.intp) - AA, 0, 2)[..., None], axis=2)[..., 0]
    assert np.mean(observed[typed] > 0.99) > 0.99


def test_genoprob_fills_missing_calls(f2_cross):
    prob = calc_genoprob(f2_cross)
    codes = f2_cross.geno[f2_cross.chrom_markers("2")].values
    missing = codes == 0
    assert missing.any()
    # flanking markers make the missing genotype informative
    assert prob["2"][missing].max(axis=1).mean() > 0.5


def test_sim_geno_seeded_and_consistent(f2_cross):
    first = sim_geno(f2_cross, n_draws=4, seed=3)
    second = sim_geno(f2_cross, n_draws=4, seed=3)
    assert first["1"].shape == (4, 150, 8)
    np.testing.assert_array_equal(first["1"], second["1"])

    codes = f2_cross.geno[f2_cross.chrom_markers("1")].values
    typed = (codes >= AA) & (codes <= BB)
    agree = first["1"][:, typed] == (codes[typed] - AA)
    assert agree.mean() > 0.99


def test_sim_geno_requires_draws(f2_cross):
    with pytest.raises(ValueError):
        sim_geno(f2_cross, n_draws=0)


@pytest.mark.parametrize("error_prob", [0, 1, -0.1, 1.5])
def test_error_prob_outside_unit_interval(f2_cross, error_prob):
    with pytest.raises(ValueError, match="error_prob"):
        calc_genoprob(f2_cross, error_prob=error_prob)
    with pytest.raises(ValueError, match="error_prob"):
        sim_geno(f2_cross, n_draws=2, error_prob=error_prob)
