import os

import numpy as np
import pandas as pd
import pytest

from cropqtl.qtl import FullResult, PartialResult, TraitAnalysisRunner, fit_qtl, peak_markers, select_loci

from conftest import QTL_EFFECT, QTL_MARKER


@pytest.fixture(scope="module")
def runner(f2_cross):
    return TraitAnalysisRunner(f2_cross, n_perm=50, seed=1, plot=False)


def test_full_result_when_loci_exceed_threshold(runner):
    result = runner.analyze("qtl_trait", 3.5)
    assert isinstance(result, FullResult)
    assert result.kind == "full"
    assert not result.candidates.empty
    assert result.model is not None
    assert (result.candidates["lod"] > 3.5).all()
    assert QTL_MARKER in result.model.loci["marker"].tolist()


def test_candidates_are_a_subset_of_scan(runner):
    result = runner.analyze("qtl_trait", 3.5)
    keys = ["marker", "chr", "pos", "lod"]
    merged = result.candidates[keys].merge(result.scan[keys], on=keys, how="left", indicator=True)
    assert (merged["_merge"] == "both").all()
    above = result.scan[result.scan["lod"] > 3.5]
    assert set(above["marker"]) == set(result.candidates["marker"])


def test_partial_result_when_nothing_exceeds_threshold(runner, log_records):
    max_lod = runner.analyze("null_trait", 3.5).scan["lod"].max()
    result = runner.analyze("null_trait", max_lod + 1.0)
    assert isinstance(result, PartialResult)
    assert result.kind == "partial"
    assert not hasattr(result, "model")
    assert not hasattr(result, "candidates")
    assert "no QTL model fitted" in result.diagnostic
    assert any(r.levelname == "WARNING" and "no QTL model fitted" in r.getMessage() for r in log_records.records)


def test_permutation_count_matches_configuration(runner):
    assert len(runner.analyze("qtl_trait").perms) == 50


def test_default_permutation_count(f2_cross):
    result = TraitAnalysisRunner(f2_cross, seed=5, plot=False).analyze("null_trait")
    assert result.perms.shape == (1000,)


def test_fixed_seed_reproduces_permutations(f2_cross):
    first = TraitAnalysisRunner(f2_cross, n_perm=30, seed=11, plot=False).analyze("null_trait")
    second = TraitAnalysisRunner(f2_cross, n_perm=30, seed=11, plot=False).analyze("null_trait")
    np.testing.assert_array_equal(first.perms, second.perms)
    pd.testing.assert_frame_equal(first.scan, second.scan)


@pytest.mark.parametrize("threshold", [0, -1.0, float("nan"), float("inf"), True, "3", None])
def test_invalid_threshold(runner, threshold):
    with pytest.raises(ValueError, match="significance_threshold"):
        runner.analyze("qtl_trait", threshold)


def test_unknown_trait(runner):
    with pytest.raises(ValueError, match="not found in phenotype data"):
        runner.analyze("yield")


def test_single_qtl_gives_one_locus_by_default(runner):
    result = runner.analyze("qtl_trait")
    assert len(result.candidates) > 1
    assert result.model.loci["marker"].tolist() == [QTL_MARKER]
    assert result.model.loci["name"].tolist() == ["Q1"]
    assert result.model.anova["locus"].tolist() == ["Q1"]


def test_adjacent_candidates_collapse_without_separation(f2_cross):
    result = TraitAnalysisRunner(f2_cross, n_perm=10, seed=1, min_separation=0, plot=False).analyze("qtl_trait")
    assert result.model.loci["marker"].tolist() == [QTL_MARKER]


def test_fit_qtl_recovers_additive_effect(f2_cross, runner):
    loci = select_loci(runner.analyze("qtl_trait").candidates)
    model = fit_qtl(f2_cross, "qtl_trait", loci, genoprob=runner.genoprob)
    name = loci.loc[loci["marker"] == QTL_MARKER, "name"].iloc[0]
    effects = model.effects.set_index("term")
    assert effects.loc[f"{name}_a", "estimate"] == pytest.approx(QTL_EFFECT, abs=0.4)
    assert abs(effects.loc[f"{name}_d", "estimate"]) < 0.6
    assert list(model.anova.columns) == ["locus", "df", "ss", "lod", "pvar", "f", "pvalue"]
    assert model.anova.set_index("locus").loc[name, "pvalue"] < 1e-6
    assert 0 < model.pvar < 100
    assert model.n == 150


def test_peak_markers_one_per_run():
    # rows 0-2 are adjacent scan markers; row 3 is the next marker but on chromosome 2
    candidates = pd.DataFrame({
        "marker": ["a", "b", "c", "d", "e"],
        "chr": ["1", "1", "1", "2", "2"],
        "pos": [10.0, 15.0, 20.0, 0.0, 30.0],
        "lod": [5.0, 6.0, 4.0, 4.5, 3.9],
    }, index=[0, 1, 2, 3, 7])
    assert peak_markers(candidates)["marker"].tolist() == ["b", "d", "e"]
    assert peak_markers(candidates.iloc[:0]).empty


def test_select_loci_enforces_separation():
    candidates = pd.DataFrame({
        "marker": ["a", "b", "c", "d", "e"],
        "chr": ["1", "1", "1", "1", "2"],
        "pos": [10.0, 15.0, 22.0, 40.0, 12.0],
        "lod": [5.0, 6.0, 5.5, 4.0, 4.5],
    }, index=[3, 4, 6, 9, 20])
    loci = select_loci(candidates, min_separation=10.0)
    assert loci["marker"].tolist() == ["b", "d", "e"]
    assert loci["name"].tolist() == ["Q1", "Q2", "Q3"]
    assert select_loci(candidates, min_separation=0)["marker"].tolist() == ["b", "c", "d", "e"]


def test_fit_qtl_requires_loci(f2_cross):
    empty = pd.DataFrame(columns=["name", "marker", "chr", "pos", "lod"])
    with pytest.raises(ValueError):
        fit_qtl(f2_cross, "qtl_trait", empty)


def test_scan_plot_written(f2_cross, tmp_path):
    runner = TraitAnalysisRunner(f2_cross, n_perm=10, seed=2, out_dir=str(tmp_path))
    runner.analyze("qtl_trait")
    assert os.path.isfile(tmp_path / "qtl_trait.scan.png")


def test_analyze_many(runner):
    results = runner.analyze_many(["qtl_trait", "null_trait"], significance_threshold=3.5)
    assert list(results) == ["qtl_trait", "null_trait"]
    assert results["qtl_trait"].kind == "full"
    with pytest.raises(ValueError):
        runner.analyze_many(["qtl_trait", "yield"])


def test_analyze_many_in_process_pool(runner):
    serial = runner.analyze_many(["qtl_trait", "null_trait"])
    pooled = runner.analyze_many(["qtl_trait", "null_trait"], threads=2)
    assert list(pooled) == ["qtl_trait", "null_trait"]
    for trait in serial:
        assert pooled[trait].kind == serial[trait].kind
        np.testing.assert_array_equal(pooled[trait].perms, serial[trait].perms)
        pd.testing.assert_frame_equal(pooled[trait].scan, serial[trait].scan)
    assert pooled["qtl_trait"].model.loci["marker"].tolist() == [QTL_MARKER]


@pytest.mark.parametrize("method", ["hk", "mr", "imp"])
def test_backcross_analysis(bc_cross, method):
    result = TraitAnalysisRunner(bc_cross, method=method, n_perm=20, seed=3, plot=False).analyze("qtl_trait")
    assert isinstance(result, FullResult)
    assert result.scan.loc[result.scan["lod"].idxmax(), "marker"] == QTL_MARKER
    loci = result.model.loci
    assert QTL_MARKER in loci["marker"].tolist()
    name = loci.loc[loci["marker"] == QTL_MARKER, "name"].iloc[0]
    effects = result.model.effects.set_index("term")
    assert effects.loc[f"{name}_a", "estimate"] == pytest.approx(QTL_EFFECT, abs=0.5)
    assert f"{name}_d" not in effects.index
    assert len(result.perms) == 20


def test_error_prob_must_be_a_probability(f2_cross):
    with pytest.raises(ValueError, match="error_prob"):
        TraitAnalysisRunner(f2_cross, error_prob=1.0, n_perm=5, plot=False)
