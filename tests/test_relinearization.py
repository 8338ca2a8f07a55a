from __future__ import annotations

import numpy as np
import pytest

from isam_jit import DoglegParams, GaussNewtonParams, ISAM2Params
from isam_jit.estimation.relinearization import check_relinearization, expand_involved, mark_stale
from isam_jit.inference.variable_index import VariableIndex

TYPES = {1: "pose2", 2: "pose2", 3: "point2", 4: "point2"}


def _delta():
    return {
        1: np.array([0.01, 0.0, 0.2]),
        2: np.array([0.0, 0.0, 0.0]),
        3: np.array([0.15, 0.0]),
        4: np.array([0.0, 0.05]),
    }


def test_scalar_threshold_uses_max_abs_component():
    assert check_relinearization(_delta(), 0.1, TYPES.__getitem__) == {1, 3}
    assert check_relinearization(_delta(), 0.5, TYPES.__getitem__) == set()


def test_per_type_thresholds():
    thresholds = {"pose2": np.array([0.1, 0.1, 0.5]), "point2": np.array([0.2])}
    assert check_relinearization(_delta(), thresholds, TYPES.__getitem__) == set()

    thresholds = {"pose2": np.array([0.1, 0.1, 0.5]), "point2": np.array([0.1, 0.01])}
    assert check_relinearization(_delta(), thresholds, TYPES.__getitem__) == {3, 4}


def test_per_type_threshold_must_cover_every_type():
    with pytest.raises(ValueError):
        check_relinearization(_delta(), {"pose2": np.array([0.1])}, TYPES.__getitem__)


def test_involved_variables_share_a_factor():
    index = VariableIndex.from_factors({0: (1,), 1: (1, 2), 2: (2, 3), 3: (3, 4)})
    assert expand_involved({1}, index) == {2}
    assert expand_involved({2}, index) == {1, 3}
    assert expand_involved({1, 2}, index) == {3}


def test_mark_stale_only_on_scheduled_or_forced_passes():
    index = VariableIndex.from_factors({0: (1,), 1: (1, 2), 2: (2, 3), 3: (3, 4)})
    args = (_delta(), 0.1, TYPES.__getitem__, index)

    assert mark_stale(*args, update_count=3, relinearize_skip=2).relinearized == set()
    stale = mark_stale(*args, update_count=4, relinearize_skip=2)
    assert stale.above_threshold == {1, 3}
    assert stale.involved == {2, 4}
    assert stale.relinearized == {1, 2, 3, 4}

    assert mark_stale(*args, update_count=3, relinearize_skip=2, force=True).above_threshold == {1, 3}
    assert mark_stale(*args, update_count=4, relinearize_skip=2, enabled=False).relinearized == set()


def test_params_validation():
    params = ISAM2Params(relinearize_threshold={"pose2": [0.1, 0.1, 0.05], "point2": 0.1})
    assert np.allclose(params.relinearize_threshold["point2"], [0.1])
    assert params.factorization.value == "qr"
    assert not params.is_dogleg
    assert ISAM2Params(optimization_params=DoglegParams()).is_dogleg

    with pytest.raises(ValueError):
        ISAM2Params(relinearize_skip=0)
    with pytest.raises(ValueError):
        ISAM2Params(relinearize_threshold=-1.0)
    with pytest.raises(ValueError):
        ISAM2Params(factorization="lu")
    with pytest.raises(ValueError):
        ISAM2Params(optimization_params="gauss-newton")
    with pytest.raises(ValueError):
        GaussNewtonParams(wildfire_threshold=-0.1)
    with pytest.raises(ValueError):
        DoglegParams(initial_delta=0.0)
