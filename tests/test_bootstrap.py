"""
Tests for resampling, the worker pool, the spill store and the replicate runner.
"""

import os
import warnings

import numpy as np
import pytest

from ecic.cic_bootstrap import (
    BootstrapDriver,
    ReplicateContext,
    ReplicateHandle,
    ReplicateStore,
    Resampler,
    WorkerPool,
    run_replicate,
    validate_n_jobs,
    validate_seed,
)
from ecic.cic_results import ReplicateResult, ReplicateStatus
from ecic.combinations import CombinationSpec, enumerate_combinations
from ecic.errors import (
    DataSufficiencyError,
    DataSufficiencyWarning,
    EventStudyAdjustmentWarning,
    ValidationError,
)
from ecic.prep import ColumnSpec, build_imputation_grid, prepare_panel

SPEC = ColumnSpec(outcome="outcome", cohort="first_treat", period="period", unit="unit")


def build_context(data, **kwargs):
    """ReplicateContext over the prepared panel with all valid combinations."""
    prepared = prepare_panel(data, SPEC, n_min=40)
    params = dict(
        data=prepared.data,
        columns=prepared.columns,
        combinations=enumerate_combinations(prepared.cohorts, prepared.periods),
        grid=build_imputation_grid(prepared.data["outcome"]),
        probs=np.array([0.25, 0.5, 0.75]),
        n_min=40,
        quant_algo=1,
        resampler=Resampler("no", seed=0),
    )
    params.update(kwargs)
    return ReplicateContext(**params)


def square(x):
    return x * x


def fail_on_three(x):
    if x == 3:
        raise RuntimeError("task 3 failed")
    return x


class TestResampler:
    """Tests for Resampler."""

    def test_no_resampling_returns_input(self, cic_data):
        resampler = Resampler("no", seed=1)
        assert resampler.draw(cic_data, 1) is cic_data

    def test_normal_draw_same_size(self, cic_data):
        drawn = Resampler("normal", seed=1).draw(cic_data, 1)

        assert len(drawn) == len(cic_data)
        assert list(drawn.index) == list(range(len(cic_data)))
        assert set(drawn["unit"]).issubset(set(cic_data["unit"]))

    def test_draw_depends_only_on_seed_and_replicate(self, cic_data):
        a = Resampler("normal", seed=5).draw(cic_data, 3)
        b = Resampler("normal", seed=5).draw(cic_data, 3)
        c = Resampler("normal", seed=5).draw(cic_data, 4)
        d = Resampler("normal", seed=6).draw(cic_data, 3)

        assert a.equals(b)
        assert not a.equals(c)
        assert not a.equals(d)

    def test_seed_none_draws_entropy_once(self):
        resampler = Resampler("normal")
        assert isinstance(resampler.seed, int)
        first = resampler.rng(1).random()
        assert resampler.rng(1).random() == first

    def test_weighted_probabilities(self, cic_data):
        data = cic_data.iloc[:-50]
        probs = Resampler("weighted", seed=0).row_probabilities(data, "first_treat", "period")

        assert probs.shape == (len(data),)
        assert probs.sum() == pytest.approx(1.0)
        cell_sizes = data.groupby(["first_treat", "period"])["unit"].transform("size")
        ratio = probs / cell_sizes.to_numpy()
        np.testing.assert_allclose(ratio, ratio[0])

    def test_unweighted_probabilities_are_none(self, cic_data):
        assert Resampler("normal").row_probabilities(cic_data, "first_treat", "period") is None

    def test_weighted_draw_requires_probabilities(self, cic_data):
        with pytest.raises(ValueError, match="row probabilities"):
            Resampler("weighted", seed=0).draw(cic_data, 1)

    def test_invalid_method(self):
        with pytest.raises(ValidationError, match="bootstrap must be"):
            Resampler("wild")

    @pytest.mark.parametrize("seed", [-1, 1.5, True, "1"])
    def test_invalid_seed(self, seed):
        with pytest.raises(ValidationError, match="seed"):
            validate_seed(seed)


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_sequential(self):
        with WorkerPool(n_jobs=1) as pool:
            assert pool.map(square, [(1,), (2,), (3,)]) == [1, 4, 9]

    def test_threads_preserve_order(self):
        with WorkerPool(n_jobs=3) as pool:
            assert pool.map(square, [(i,) for i in range(10)]) == [i * i for i in range(10)]

    def test_processes_preserve_order(self):
        with WorkerPool(n_jobs=2, backend="process") as pool:
            assert pool.map(square, [(i,) for i in range(6)]) == [i * i for i in range(6)]

    def test_all_cores(self):
        pool = WorkerPool(n_jobs=-1)
        assert pool.max_workers == (os.cpu_count() or 1)

    @pytest.mark.parametrize("n_jobs", [1, 2])
    def test_first_failure_propagates(self, n_jobs):
        with WorkerPool(n_jobs=n_jobs) as pool:
            with pytest.raises(RuntimeError, match="task 3 failed"):
                pool.map(fail_on_three, [(i,) for i in range(6)])

    @pytest.mark.parametrize("n_jobs", [0, -2, 1.0, True])
    def test_invalid_n_jobs(self, n_jobs):
        with pytest.raises(ValidationError, match="n_jobs"):
            validate_n_jobs(n_jobs)

    def test_invalid_backend(self):
        with pytest.raises(ValidationError, match="backend"):
            WorkerPool(n_jobs=2, backend="dask")


class TestReplicateStore:
    """Tests for the on-disk replicate store."""

    def test_put_and_get(self, cic_data):
        context = build_context(cic_data)
        result, _ = run_replicate(context, 7)

        with ReplicateStore.temporary() as store:
            handle = store.put(result)
            assert isinstance(handle, ReplicateHandle)
            assert handle.replicate == 7
            assert handle.key == "replicate_000007"
            assert os.path.exists(handle.path)

            loaded = store.get(handle)
            np.testing.assert_array_equal(loaded.qte.effects, result.qte.effects)
            directory = store.directory

        assert not directory.exists()


class TestRunReplicate:
    """Tests for run_replicate."""

    def test_completed(self, cic_data):
        context = build_context(cic_data)
        result, diagnostics = run_replicate(context, 1)

        assert isinstance(result, ReplicateResult)
        assert result.replicate == 1
        assert result.status == ReplicateStatus.COMPLETED
        assert diagnostics == ()
        assert len(result.combinations) == len(context.combinations)
        assert result.n_skipped == 0

    def test_skipped_combination(self, cic_data):
        context = build_context(cic_data)
        context.combinations = list(context.combinations) + [CombinationSpec(3, 4, 3, 99)]

        result, diagnostics = run_replicate(context, 2)

        assert result.status == ReplicateStatus.COMPLETED_WITH_SKIPS
        assert result.n_skipped == 1
        assert len(diagnostics) == 1
        assert diagnostics[0].category is DataSufficiencyWarning
        assert "Skipped a period-cohort group in bootstrap run 2" in diagnostics[0].message
        assert diagnostics[0].combination == CombinationSpec(3, 4, 3, 99)

    def test_all_skipped_raises(self, cic_data):
        context = build_context(cic_data, n_min=10 ** 6)
        with pytest.raises(DataSufficiencyError, match="Bootstrap run 1"):
            run_replicate(context, 1)

    def test_event_study_horizon_clamped(self, event_study_data):
        context = build_context(event_study_data, es=True, horizon=3)

        result, diagnostics = run_replicate(context, 1)

        assert result.status == ReplicateStatus.DEGRADED
        assert result.realized_horizon == 1
        assert sorted(result.qte) == [0, 1]
        assert any(d.category is EventStudyAdjustmentWarning for d in diagnostics)
        assert "Only 1 post-treatment periods" in diagnostics[0].message

    def test_short_output(self, cic_data):
        short, _ = run_replicate(build_context(cic_data), 1)
        full, _ = run_replicate(build_context(cic_data, short_output=False), 1)

        assert short.combination_results is None
        assert len(full.combination_results) == len(full.combinations)

    def test_spills_when_store_set(self, cic_data):
        with ReplicateStore.temporary() as store:
            output, _ = run_replicate(build_context(cic_data, store=store), 4)
            assert isinstance(output, ReplicateHandle)
            assert store.get(output).replicate == 4


class TestBootstrapDriver:
    """Tests for BootstrapDriver."""

    def test_outputs_in_replicate_order(self, cic_data):
        context = build_context(cic_data, resampler=Resampler("normal", seed=3))
        with WorkerPool(n_jobs=2) as pool:
            outputs = BootstrapDriver(context, pool).run(4)

        assert [o.replicate for o in outputs] == [1, 2, 3, 4]

    def test_parallel_matches_sequential(self, cic_data):
        context = build_context(cic_data, resampler=Resampler("normal", seed=3))
        with WorkerPool(n_jobs=1) as pool:
            sequential = BootstrapDriver(context, pool).run(3)
        with WorkerPool(n_jobs=3) as pool:
            parallel = BootstrapDriver(context, pool).run(3)

        for a, b in zip(sequential, parallel):
            np.testing.assert_array_equal(a.qte.effects, b.qte.effects)

    def test_diagnostics_emitted_as_warnings(self, cic_data):
        context = build_context(cic_data)
        context.combinations = list(context.combinations) + [CombinationSpec(3, 4, 3, 99)]

        with pytest.warns(DataSufficiencyWarning, match="bootstrap run 1"):
            with WorkerPool(n_jobs=1) as pool:
                BootstrapDriver(context, pool).run(1)

    def test_replicate_failure_propagates(self, cic_data):
        context = build_context(cic_data, n_min=10 ** 6)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            with WorkerPool(n_jobs=2) as pool:
                with pytest.raises(DataSufficiencyError):
                    BootstrapDriver(context, pool).run(3)
