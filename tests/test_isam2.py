from __future__ import annotations

import numpy as np
import pytest

from isam_jit import (
    ISAM2,
    DoglegParams,
    GaussNewtonParams,
    ISAM2Params,
    InvalidUpdateError,
    NonlinearFactorGraph,
    NumericalFactorizationError,
    Values,
    VariableStatus,
    gauss_newton,
    make_factor,
    sigma_to_weight,
)
from isam_jit.core.math3d import between_pose2, compose_pose2


# =============================================================================
# Helpers
# =============================================================================


def _values(*entries, var_type="vector"):
    v = Values()
    for key, value in entries:
        v.insert(key, value, var_type)
    return v


def _prior(key, target, weight=1.0):
    return make_factor("prior", (key,), {"target": target, "weight": weight})


def _odom(i, j, meas, weight=1.0):
    return make_factor("odom", (i, j), {"measurement": meas, "weight": weight})


def _chain(isam, n, **kwargs):
    """1D chain 1..n at its exact solution: prior 0 on 1, unit odometry."""
    factors = [_prior(1, [0.0])] + [_odom(k, k + 1, [1.0]) for k in range(1, n)]
    values = _values(*[(k, [float(k - 1)]) for k in range(1, n + 1)])
    return isam.update(factors, values, **kwargs)


def _pose2_chain(keys, step):
    truth = {keys[0]: np.zeros(3)}
    for a, b in zip(keys, keys[1:]):
        truth[b] = np.asarray(compose_pose2(truth[a], step))
    factors = [make_factor("prior_pose2", (keys[0],), {"target": truth[keys[0]], "weight": 100.0})]
    for a, b in zip(keys, keys[1:]):
        factors.append(make_factor("between_pose2", (a, b), {"measurement": step}))
    values = _values(*[(k, truth[k]) for k in keys], var_type="pose2")
    return factors, values, truth


def _state(isam):
    return (
        len(isam.get_factors_unsafe()),
        isam.get_variable_index().n_factors,
        isam.get_variable_index().keys(),
        isam.get_linearization_point().keys(),
        isam.get_ordering(),
        dict(isam.bayes_tree.cliques),
        isam.update_count,
    )


# =============================================================================
# Structure
# =============================================================================


def test_chain_estimate_is_composed_odometry():
    step = np.array([1.0, 0.0, 0.3])
    factors, values, truth = _pose2_chain([1, 2, 3], step)
    isam = ISAM2()
    result = isam.update(factors, values)

    assert result.new_factors_indices == [0, 1, 2]
    assert result.variables_reeliminated == 3
    estimate = isam.calculate_estimate()
    for key, pose in truth.items():
        assert np.allclose(estimate.at(key), pose, atol=1e-9)
    assert isam.bayes_tree.check_running_intersection()


def test_loop_closure_leaves_disjoint_subtree_untouched():
    """
    Two independent pose chains 1-2-3 and 10-11-12. A loop closure between
    3 and 1 re-eliminates exactly the first chain; every clique of the
    second chain is still the same object afterwards.
    """
    step = np.array([1.0, 0.0, 0.3])
    fa, va, truth = _pose2_chain([1, 2, 3], step)
    fb, vb, truth_b = _pose2_chain([10, 11, 12], step)
    isam = ISAM2()
    isam.update(fa + fb, va.merged(vb))

    other = {k: isam.bayes_tree.clique(k) for k in (10, 11, 12)}
    old_first = isam.bayes_tree.clique(1)

    loop = make_factor("between_pose2", (3, 1), {"measurement": np.asarray(between_pose2(truth[3], truth[1]))})
    result = isam.update([loop])

    assert result.observed_keys == {1, 3}
    assert result.variables_reeliminated == 3
    assert isam.last_affected_variable_count == 3
    for key, clique in other.items():
        assert isam.bayes_tree.clique(key) is clique
    assert isam.bayes_tree.clique(1) is not old_first
    assert isam.bayes_tree.check_running_intersection()

    estimate = isam.calculate_best_estimate()
    for key, pose in {**truth, **truth_b}.items():
        assert np.allclose(estimate.at(key), pose, atol=1e-9)


def test_empty_update_is_a_no_op():
    isam = ISAM2(ISAM2Params(relinearize_skip=1))
    _chain(isam, 4)
    cliques = dict(isam.bayes_tree.cliques)
    ordering = isam.get_ordering()

    result = isam.update()

    assert result.variables_relinearized == 0
    assert result.variables_reeliminated == 0
    assert result.marked_keys == set()
    assert isam.get_ordering() == ordering
    assert isam.bayes_tree.cliques.keys() == cliques.keys()
    assert all(isam.bayes_tree.cliques[c] is cliques[c] for c in cliques)
    assert isam.update_count == 2


def test_wildfire_only_solves_cliques_reached_by_the_change():
    """
    Chain 1..6 gives cliques {5,6} <- {4|5} <- {3|4} <- {2|3} <- {1|2}.
    Appending 7 re-eliminates {5,6,7}; back-substitution then solves the
    three re-eliminated variables plus 4 (its parent 5 was replaced) and
    stops there because 4 does not move.
    """
    isam = ISAM2()
    _chain(isam, 6)
    isam.calculate_estimate()
    assert isam.last_backsub_variable_count == 6

    isam.update([_odom(6, 7, [1.0])], _values((7, [6.0])))
    assert isam.last_affected_variable_count == 3

    estimate = isam.calculate_estimate()
    assert isam.last_backsub_variable_count == 4
    assert np.allclose([estimate.at(k)[0] for k in range(1, 8)], np.arange(7.0))


def test_constrained_keys_are_eliminated_last():
    isam = ISAM2()
    _chain(isam, 4, constrained_keys={1: 1})
    assert isam.get_ordering()[-1] == 1
    assert 1 in isam.bayes_tree.root_keys()


# =============================================================================
# Relinearization and caches
# =============================================================================


def test_relinearization_refreshes_only_stale_factors():
    """
    Chain 1..4 at its solution. Variable 5 hangs off 4 through a weak
    odometry factor and has a strong prior far from its initial guess, so
    after the next solve only 5 is beyond the threshold and 4 is involved
    through the shared factor. Nothing else is ever relinearized and the
    linear factors of the untouched variables are the cached objects.
    """
    params = ISAM2Params(relinearize_skip=1, relinearize_threshold=0.1, enable_detailed_results=True)
    isam = ISAM2(params)
    _chain(isam, 4)

    weak = _odom(4, 5, [1.0], weight=sigma_to_weight(100.0))
    strong = _prior(5, [10.0], weight=sigma_to_weight(0.01))
    result = isam.update([weak, strong], _values((5, [4.0])))
    weak_index = result.new_factors_indices[0]
    assert result.variables_relinearized == 0
    cached_before = isam.get_cached_linear_factors()

    result = isam.update()

    assert result.variables_relinearized == 2
    status = result.detail.variable_status
    assert status[5].is_above_relin_threshold and status[5].is_relinearized
    assert status[4].is_relinearize_involved and not status[4].is_above_relin_threshold
    for key in (1, 2, 3):
        assert not status.get(key, VariableStatus()).is_relinearized

    theta = isam.get_linearization_point()
    assert theta.at(3)[0] == 2.0
    assert theta.at(5)[0] == pytest.approx(10.0, abs=1e-2)

    cached_after = isam.get_cached_linear_factors()
    assert cached_after[1] is cached_before[1]
    assert cached_after[weak_index] is not cached_before[weak_index]
    assert np.allclose(cached_after[weak_index].b, -isam.get_factors_unsafe()[weak_index].residual(theta))

    for _ in range(3):
        assert isam.update().variables_relinearized == 0

    batch = gauss_newton(isam.get_factors_unsafe(), isam.get_linearization_point())
    estimate = isam.calculate_best_estimate()
    for key in range(1, 6):
        assert np.allclose(estimate.at(key), batch.at(key), atol=1e-8)


def test_disabled_relinearization_keeps_the_linearization_point():
    isam = ISAM2(ISAM2Params(relinearize_skip=1, enable_relinearization=False))
    isam.update([_prior(1, [5.0])], _values((1, [0.0])))
    for _ in range(3):
        assert isam.update(force_relinearize=True).variables_relinearized == 0
    assert isam.get_linearization_point().at(1)[0] == 0.0
    assert isam.calculate_estimate(1)[0] == pytest.approx(5.0)


# =============================================================================
# Errors and rollback
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"new_factors": [_odom(3, 99, [1.0])]},
        {"new_factors": [_prior(2, [0.0])], "new_theta": _values((2, [1.0]))},
        {"new_factors": [], "new_theta": _values((5, [0.0]))},
        {"remove_factor_indices": [42]},
        {"remove_factor_indices": [0, 0]},
        {"constrained_keys": {77: 1}},
    ],
    ids=["unknown-variable", "duplicate-variable", "unused-variable",
         "absent-factor", "duplicate-removal", "unknown-constrained-key"],
)
def test_invalid_updates_are_rejected_without_side_effects(kwargs):
    isam = ISAM2()
    _chain(isam, 3)
    before = _state(isam)

    with pytest.raises(InvalidUpdateError) as info:
        isam.update(**kwargs)

    assert isinstance(info.value, ValueError)
    assert _state(isam) == before


def test_numerical_failure_rolls_back_the_update():
    """
    A zero-weight factor is the only one touching variable 5, so 5 is
    under-constrained. The update fails and the estimator is exactly as it
    was; a well-posed retry then succeeds.
    """
    isam = ISAM2()
    _chain(isam, 4)
    before = _state(isam)
    estimate = isam.calculate_estimate()

    with pytest.raises(NumericalFactorizationError) as info:
        isam.update([_odom(4, 5, [1.0], weight=0.0)], _values((5, [4.0])))

    assert 5 in info.value.keys
    assert _state(isam) == before
    assert 5 not in isam.get_linearization_point()
    after = isam.calculate_estimate()
    for key in range(1, 5):
        assert np.allclose(after.at(key), estimate.at(key))

    result = isam.update([_odom(4, 5, [1.0])], _values((5, [4.0])))
    assert result.new_factors_indices == [4]
    assert isam.calculate_estimate(5)[0] == pytest.approx(4.0)


def test_factor_removal():
    isam = ISAM2()
    _chain(isam, 3)
    result = isam.update([_prior(3, [10.0])])
    outlier = result.new_factors_indices[0]
    assert isam.calculate_best_estimate().at(3)[0] > 3.0

    result = isam.update(remove_factor_indices=[outlier])

    assert result.keys_with_removed_factors == {3}
    assert 3 in result.observed_keys
    assert isam.get_factors_unsafe()[outlier] is None
    assert outlier not in isam.get_cached_linear_factors()
    assert outlier not in isam.get_variable_index().factor_indices()
    estimate = isam.calculate_best_estimate()
    assert np.allclose([estimate.at(k)[0] for k in (1, 2, 3)], [0.0, 1.0, 2.0])

    with pytest.raises(InvalidUpdateError):
        isam.update(remove_factor_indices=[outlier])


# =============================================================================
# Agreement with batch solutions
# =============================================================================


@pytest.mark.parametrize("factorization", ["qr", "cholesky"])
@pytest.mark.parametrize("cache", [True, False])
def test_linear_problem_matches_batch_least_squares(factorization, cache):
    """
    Random 2D points with inconsistent odometry and loop closures, fed in
    batches with one factor removed along the way. Each state of the
    incremental solution equals the least-squares solution of the live
    factors.
    """
    rng = np.random.default_rng(11)
    params = ISAM2Params(
        optimization_params=GaussNewtonParams(wildfire_threshold=0.0),
        factorization=factorization,
        cache_linearized_factors=cache,
    )
    isam = ISAM2(params)
    reference = NonlinearFactorGraph()

    def odo(i, j):
        return make_factor("odom", (i, j), {
            "measurement": rng.normal(size=2), "weight": rng.uniform(0.5, 2.0),
        })

    def points(*keys):
        return _values(*[(k, rng.normal(size=2)) for k in keys], var_type="point2")

    batches = [
        ([make_factor("prior", (0,), {"target": [0.0, 0.0]}), odo(0, 1), odo(1, 2)], points(0, 1, 2), []),
        ([odo(2, 3), odo(3, 4)], points(3, 4), []),
        ([odo(4, 5), odo(5, 0), odo(4, 1)], points(5), []),
        ([odo(5, 6), odo(6, 7)], points(6, 7), [7]),
        ([odo(7, 2)], Values(), []),
    ]
    for factors, values, remove in batches:
        result = isam.update(factors, values, remove_factor_indices=remove)
        assert result.new_factors_indices == reference.add_factors(factors)
        for i in remove:
            reference.remove(i)

        zero = Values()
        for key in isam.get_linearization_point().keys():
            zero.insert(key, np.zeros(2), "point2")
        expected = gauss_newton(reference, zero)
        best = isam.calculate_best_estimate()
        estimate = isam.calculate_estimate()
        for key in zero.keys():
            assert np.allclose(best.at(key), expected.at(key), atol=1e-8)
            assert np.allclose(estimate.at(key), expected.at(key), atol=1e-8)
        assert isam.bayes_tree.check_running_intersection()


def _feed(isam, steps):
    results = []
    for factors, values in steps:
        results.append(isam.update(factors, values))
    return results


@pytest.mark.parametrize("factorization", ["qr", "cholesky"])
def test_pose2_loop_converges_to_batch_solution(pose2_loop, factorization):
    steps, truth = pose2_loop
    isam = ISAM2(ISAM2Params(relinearize_skip=1, relinearize_threshold=1e-6, factorization=factorization))
    _feed(isam, steps)
    for _ in range(8):
        isam.update()

    graph = isam.get_factors_unsafe()
    initial = Values()
    for factors, values in steps:
        for key in values.keys():
            initial.insert(key, values.at(key), "pose2")
    batch = gauss_newton(graph, initial)

    estimate = isam.calculate_best_estimate()
    for key, pose in truth.items():
        assert np.allclose(estimate.at(key), batch.at(key), atol=1e-6)
        assert np.allclose(estimate.at(key), pose, atol=1e-6)


def test_dogleg_converges_on_pose2_loop(pose2_loop):
    steps, truth = pose2_loop
    params = ISAM2Params(
        optimization_params=DoglegParams(initial_delta=1.0),
        relinearize_skip=1,
        relinearize_threshold=1e-6,
    )
    isam = ISAM2(params)
    _feed(isam, steps)
    for _ in range(10):
        isam.update()

    estimate = isam.calculate_estimate()
    for key, pose in truth.items():
        assert np.allclose(estimate.at(key), pose, atol=1e-4)


def test_nonlinear_error_is_reported_and_decreases(pose2_loop):
    steps, _ = pose2_loop
    isam = ISAM2(ISAM2Params(evaluate_nonlinear_error=True))
    for result in _feed(isam, steps):
        assert result.error_before is not None
        assert result.error_after < result.error_before

    quiet = ISAM2()
    result = quiet.update(*steps[0])
    assert result.error_before is None and result.error_after is None


# =============================================================================
# Accessors and results
# =============================================================================


def test_detailed_results_flags():
    isam = ISAM2(ISAM2Params(enable_detailed_results=True))
    result = _chain(isam, 3)
    for key in (1, 2, 3):
        status = result.detail.variable_status[key]
        assert status.is_new and status.is_observed and status.is_reeliminated
        assert not status.is_relinearized
    assert result.detail.variable_status[3].in_root_clique
    assert isam.last_nnz_top == isam.bayes_tree.nnz()

    result = isam.update([_odom(3, 4, [1.0])], _values((4, [3.0])))
    assert not result.detail.variable_status.get(1, VariableStatus()).is_reeliminated
    assert result.detail.variable_status[4].is_new


def test_single_key_estimate_and_copy():
    isam = ISAM2()
    _chain(isam, 3)
    full = isam.calculate_estimate()
    assert np.allclose(isam.calculate_estimate(2), full.at(2))

    clone = isam.copy()
    clone.update([_odom(3, 4, [1.0])], _values((4, [3.0])))
    assert 4 in clone.get_linearization_point()
    assert 4 not in isam.get_linearization_point()
    assert isam.update_count == 1 and clone.update_count == 2


def test_accepts_a_factor_graph_as_input():
    graph = NonlinearFactorGraph()
    graph.add_factor("prior", (0,), {"target": [1.0, 2.0]})
    isam = ISAM2()
    isam.update(graph, _values((0, [0.0, 0.0]), var_type="point2"))
    assert np.allclose(isam.calculate_estimate(0), [1.0, 2.0])
