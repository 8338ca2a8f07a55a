# Copyright (c) 2025.
# This file is part of iSAM-JIT, released under the MIT License.
"""
ISAM2: incremental smoothing and mapping on a Bayes tree.

The estimator keeps the whole problem in factored form and, for each batch
of new measurements, redoes only the part of the factorization the batch
can have changed.

State
-----
theta             linearization point (`Values`)
delta             current linear correction; the estimate is theta ⊕ delta
factors           every nonlinear factor ever added (slots, removals leave holes)
variable_index    key → factors touching it
linear_factors    cached linearizations, valid while their keys keep the
                  same linearization point
tree              the `BayesTree` of the linearized problem

One update
----------
1. Validate the input; nothing is mutated when it is rejected.
2. Index the new factors and drop removed ones.
3. Observed keys (touched by new or removed factors) are marked.
4. On scheduled passes, variables whose delta exceeds the relinearization
   threshold, plus the variables sharing a factor with them, get a new
   linearization point (theta ⊕ delta) and a zero delta. They are marked
   together with the frontals of every clique whose separator holds them.
5. Every clique holding a marked key is removed together with its
   ancestors. The frontals of those cliques, plus the marked keys, are the
   affected variables; the subtrees left hanging are orphans.
6. The affected variables are re-ordered (observed keys constrained last),
   and the factors lying entirely inside them are eliminated together with
   the cached separator factor of every orphan.
7. The new cliques replace the removed top, orphans are re-attached under
   the clique holding their earliest separator key, and the new state is
   committed in one step.

Steps 5 to 7 are planned without touching the committed tree, theta,
delta or factor caches, so a numerical or structural failure leaves the
estimator exactly as it was before the call.

The delta is solved lazily (wildfire back-substitution, or a dogleg step
for `DoglegParams`) the first time it is read after an update.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

import numpy as np

from isam_jit.core.errors import InvalidUpdateError
from isam_jit.core.factor_graph import NonlinearFactorGraph
from isam_jit.core.types import Factor, FactorIndex, Key
from isam_jit.core.values import Values, VectorValues
from isam_jit.estimation.params import DoglegParams, ISAM2Params
from isam_jit.estimation.relinearization import StaleVariables, mark_stale
from isam_jit.estimation.result import DetailedResults, ISAM2Result
from isam_jit.inference.bayes_tree import BayesTree, CliqueBuild, RemovalPlan
from isam_jit.inference.elimination_tree import EliminationTree
from isam_jit.inference.ordering import compute_ordering
from isam_jit.inference.variable_index import VariableIndex
from isam_jit.linear.jacobian_factor import JacobianFactor
from isam_jit.optimization import dogleg
from isam_jit.optimization.delta import back_substitute, optimize_gradient_search, optimize_wildfire

logger = logging.getLogger(__name__)


@dataclass
class _UpdatePlan:
    """Everything an update will commit, computed without touching committed state."""
    stale: StaleVariables
    marked: Set[Key]
    affected: Set[Key]
    theta: Values
    removal: RemovalPlan
    build: Optional[CliqueBuild]
    orphan_parents: Dict[int, Optional[int]]
    sub_ordering: List[Key]
    fresh: Dict[FactorIndex, JacobianFactor]
    affected_factor_count: int


class ISAM2:
    def __init__(self, params: Optional[ISAM2Params] = None):
        self.params = params or ISAM2Params()

        self._theta = Values()
        self._factors = NonlinearFactorGraph()
        self._variable_index = VariableIndex()
        self._linear_factors: Dict[FactorIndex, JacobianFactor] = {}
        self._tree = BayesTree()
        self._ordering: List[Key] = []

        self._delta = VectorValues()
        self._delta_newton = VectorValues()
        self._delta_replaced: Set[Key] = set()
        self._delta_uptodate = True
        self._dogleg_delta: Optional[float] = None

        self._update_count = 0

        self.last_affected_variable_count = 0
        self.last_affected_factor_count = 0
        self.last_affected_clique_count = 0
        self.last_affected_marked_count = 0
        self.last_backsub_variable_count = 0
        self.last_nnz_top = 0

    # --- Accessors ---

    @property
    def bayes_tree(self) -> BayesTree:
        return self._tree

    def get_linearization_point(self) -> Values:
        return self._theta

    def get_factors_unsafe(self) -> NonlinearFactorGraph:
        return self._factors

    def get_variable_index(self) -> VariableIndex:
        return self._variable_index

    def get_ordering(self) -> List[Key]:
        return list(self._ordering)

    def get_cached_linear_factors(self) -> Dict[FactorIndex, JacobianFactor]:
        return dict(self._linear_factors)

    @property
    def update_count(self) -> int:
        return self._update_count

    def copy(self) -> "ISAM2":
        return copy.deepcopy(self)

    # --- Estimates ---

    def get_delta(self) -> VectorValues:
        self._update_delta()
        return self._delta

    def calculate_estimate(self, key: Optional[Key] = None):
        """theta ⊕ delta, from the lazily maintained (possibly incomplete) delta."""
        delta = self.get_delta()
        if key is not None:
            return self._theta.retract_key(key, delta[key])
        return self._theta.retract(delta)

    def calculate_best_estimate(self) -> Values:
        """theta ⊕ full back-substitution of the current Bayes tree."""
        return self._theta.retract(back_substitute(self._tree))

    def _update_delta(self) -> None:
        if self._delta_uptodate:
            return
        opt = self.params.optimization_params
        if isinstance(opt, DoglegParams):
            count = optimize_wildfire(
                self._tree, opt.wildfire_threshold, self._delta_replaced, self._delta_newton
            )
            dx_u = optimize_gradient_search(self._tree)
            if self._dogleg_delta is None:
                self._dogleg_delta = opt.initial_delta
            step = dogleg.iterate(
                self._dogleg_delta,
                opt.adaptation_mode,
                dx_u,
                self._delta_newton,
                self._tree,
                self._factors,
                self._theta,
                self._factors.error(self._theta),
                opt.verbose,
            )
            self._dogleg_delta = step.delta
            self._delta = step.dx_d
        else:
            count = optimize_wildfire(
                self._tree, opt.wildfire_threshold, self._delta_replaced, self._delta
            )
        self.last_backsub_variable_count = count
        self._delta_replaced = set()
        self._delta_uptodate = True

    # --- Update ---

    def _validate(
        self,
        new_factors: List[Factor],
        new_theta: Values,
        remove_factor_indices: List[int],
        constrained_keys: Optional[Mapping[Key, int]],
    ) -> None:
        fmt = self.params.key_formatter
        duplicates = [k for k in new_theta.keys() if k in self._theta]
        if duplicates:
            raise InvalidUpdateError(
                f"variables already in the system: {[fmt(k) for k in duplicates]}"
            )
        referenced: Set[Key] = set()
        for f in new_factors:
            referenced.update(f.keys())
        unknown = sorted(k for k in referenced if k not in self._theta and k not in new_theta)
        if unknown:
            raise InvalidUpdateError(
                f"factors reference unknown variables: {[fmt(k) for k in unknown]}"
            )
        unused = sorted(k for k in new_theta.keys() if k not in referenced)
        if unused:
            raise InvalidUpdateError(
                f"new variables are not touched by any new factor: {[fmt(k) for k in unused]}"
            )
        if len(set(remove_factor_indices)) != len(remove_factor_indices):
            raise InvalidUpdateError(f"duplicate factor indices in removal: {remove_factor_indices}")
        absent = [i for i in remove_factor_indices if not self._factors.is_live(i)]
        if absent:
            raise InvalidUpdateError(f"cannot remove factors that are not in the system: {absent}")
        if constrained_keys:
            stray = sorted(k for k in constrained_keys if k not in self._theta and k not in new_theta)
            if stray:
                raise InvalidUpdateError(
                    f"constrained keys are not variables: {[fmt(k) for k in stray]}"
                )

    def update(
        self,
        new_factors: Optional[Union[NonlinearFactorGraph, Iterable[Factor]]] = None,
        new_theta: Optional[Values] = None,
        remove_factor_indices: Optional[Iterable[int]] = None,
        constrained_keys: Optional[Mapping[Key, int]] = None,
        force_relinearize: bool = False,
    ) -> ISAM2Result:
        """
        Add ``new_factors`` and ``new_theta`` (initial values of the new
        variables), remove the factors at ``remove_factor_indices``, and
        bring the factorization up to date.

        ``constrained_keys`` optionally maps keys to ordering groups (higher
        groups are eliminated later, i.e. closer to the root).
        """
        factors = list(new_factors) if new_factors is not None else []
        theta_new = new_theta if new_theta is not None else Values()
        remove = [int(i) for i in (remove_factor_indices or ())]
        self._validate(factors, theta_new, remove, constrained_keys)

        update_count = self._update_count + 1
        result = ISAM2Result()
        if self.params.enable_detailed_results:
            result.detail = DetailedResults()

        if self.params.evaluate_nonlinear_error:
            estimate = self.calculate_estimate().merged(theta_new)
            result.error_before = sum(
                f.error(estimate) for i, f in self._factors.items() if i not in remove
            ) + sum(f.error(estimate) for f in factors)

        new_indices = [FactorIndex(len(self._factors) + i) for i in range(len(factors))]
        removed_factors = {i: self._factors[i] for i in remove}

        result.new_factors_indices = list(new_indices)
        for f in removed_factors.values():
            result.keys_with_removed_factors.update(f.keys())
        for f in factors:
            result.observed_keys.update(f.keys())
        result.observed_keys |= result.keys_with_removed_factors

        unindexed = {k for k in result.observed_keys if k not in self._variable_index}
        self._variable_index.add_factors({i: f.keys() for i, f in zip(new_indices, factors)})
        removed_from_index = False
        try:
            self._variable_index.remove_factors(remove)
            removed_from_index = True
            plan = self._plan(
                update_count, factors, new_indices, theta_new,
                result, constrained_keys, force_relinearize,
            )
        except Exception as exc:
            if removed_from_index:
                self._variable_index.add_factors({i: f.keys() for i, f in removed_factors.items()})
            self._variable_index.remove_factors(new_indices)
            self._variable_index.discard_unused(unindexed)
            logger.warning("update %d rolled back: %s", update_count, exc)
            raise

        self._commit(plan, factors, remove, theta_new)
        self._update_count = update_count

        result.variables_relinearized = len(plan.stale.relinearized)
        result.variables_reeliminated = len(plan.affected)
        result.cliques = len(self._tree)
        if result.detail is not None:
            self._fill_detail(result, plan, theta_new)
            self.last_nnz_top = self._tree.nnz()
        if self.params.evaluate_nonlinear_error:
            result.error_after = self._factors.error(self.calculate_estimate())

        logger.debug(
            "update %d: %d new factors, %d removed, %d marked, %d relinearized, "
            "%d re-eliminated, %d cliques",
            update_count, len(factors), len(remove), len(result.marked_keys),
            result.variables_relinearized, result.variables_reeliminated, result.cliques,
        )
        return result

    def _plan(
        self,
        update_count: int,
        factors: List[Factor],
        new_indices: List[FactorIndex],
        theta_new: Values,
        result: ISAM2Result,
        constrained_keys: Optional[Mapping[Key, int]],
        force_relinearize: bool,
    ) -> "_UpdatePlan":
        observed = set(result.observed_keys)
        marked = set(observed)

        theta = self._theta.merged(theta_new)
        scheduled = self.params.enable_relinearization and (
            force_relinearize or update_count % self.params.relinearize_skip == 0
        )
        stale = StaleVariables()
        if scheduled and len(self._theta):
            stale = mark_stale(
                self.get_delta(),
                self.params.relinearize_threshold,
                self._theta.var_type,
                self._variable_index,
                update_count,
                self.params.relinearize_skip,
                force=force_relinearize,
            )
        relin_keys = stale.relinearized
        if relin_keys:
            marked |= relin_keys | self._tree.find_all(relin_keys)
            for key in relin_keys:
                theta.update(key, self._theta.retract_key(key, self._delta[key]))
        result.marked_keys = marked

        removal = self._tree.plan_remove_top(marked)
        affected = removal.affected_keys | marked

        new_by_index = dict(zip(new_indices, factors))
        candidates: Set[int] = set()
        for key in affected:
            candidates.update(self._variable_index.factors_touching(key))

        linear: Dict[int, JacobianFactor] = {}
        fresh: Dict[FactorIndex, JacobianFactor] = {}
        for fi in sorted(candidates):
            keys = self._variable_index.factor_keys(fi)
            if not affected.issuperset(keys):
                continue
            cached = self._linear_factors.get(fi)
            if (
                cached is not None
                and self.params.cache_linearized_factors
                and relin_keys.isdisjoint(keys)
            ):
                linear[fi] = cached
            else:
                factor = new_by_index[fi] if fi in new_by_index else self._factors[fi]
                linear[fi] = factor.linearize(theta)
                fresh[FactorIndex(fi)] = linear[fi]
        affected_factor_count = len(linear)

        next_id = len(self._factors) + len(factors)
        for oid in removal.orphans:
            cached_factor = self._tree.cliques[oid].cached_factor
            if cached_factor is not None:
                linear[next_id] = cached_factor
                next_id += 1

        if affected:
            sub_index = VariableIndex.from_factors({i: f.keys for i, f in linear.items()})
            if constrained_keys:
                groups = {k: g for k, g in constrained_keys.items() if k in affected}
            elif len(observed & affected) < len(affected):
                groups = {k: 1 for k in observed & affected}
            else:
                groups = {}
            sub_ordering = compute_ordering(sub_index, groups, keys=affected)
            position = {k: i for i, k in enumerate(sub_ordering)}
            etree = EliminationTree.create(linear, sub_ordering, sub_index)
            build = self._tree.build_cliques(etree.eliminate(self.params.factorization))
            orphan_parents = self._tree.attach_orphans(removal.orphans, build, position)
        else:
            sub_ordering = []
            build = None
            orphan_parents = {}

        return _UpdatePlan(
            stale=stale,
            marked=marked,
            affected=affected,
            theta=theta,
            removal=removal,
            build=build,
            orphan_parents=orphan_parents,
            sub_ordering=sub_ordering,
            fresh=fresh,
            affected_factor_count=affected_factor_count,
        )

    def _commit(self, plan: "_UpdatePlan", factors: List[Factor], remove: List[int], theta_new: Values) -> None:
        self._factors.add_factors(factors)
        for i in remove:
            self._factors.remove(i)
            self._linear_factors.pop(FactorIndex(i), None)
        if self.params.cache_linearized_factors:
            self._linear_factors.update(plan.fresh)

        self._theta = plan.theta
        for key in theta_new.keys():
            self._delta[key] = np.zeros(theta_new.dim(key))
            self._delta_newton[key] = np.zeros(theta_new.dim(key))
        for key in plan.stale.relinearized:
            self._delta[key] = np.zeros_like(self._delta[key])
            self._delta_newton[key] = np.zeros_like(self._delta_newton[key])

        affected = plan.affected
        if plan.build is not None:
            self._tree.apply(plan.removal.removed, plan.build, plan.orphan_parents)
            self._ordering = [k for k in self._ordering if k not in affected] + plan.sub_ordering

        self._delta_replaced |= affected
        if affected:
            self._delta_uptodate = False

        self.last_affected_variable_count = len(affected)
        self.last_affected_factor_count = plan.affected_factor_count
        self.last_affected_clique_count = len(plan.build.cliques) if plan.build is not None else 0
        self.last_affected_marked_count = len(plan.marked)

    def _fill_detail(self, result: ISAM2Result, plan: "_UpdatePlan", theta_new: Values) -> None:
        detail = result.detail
        stale: StaleVariables = plan.stale
        for key in plan.affected:
            detail.status(key).is_reeliminated = True
        for key in stale.above_threshold:
            detail.status(key).is_above_relin_threshold = True
            detail.status(key).is_relinearized = True
        for key in stale.involved:
            detail.status(key).is_relinearize_involved = True
            detail.status(key).is_relinearized = True
        for key in result.observed_keys:
            detail.status(key).is_observed = True
        for key in theta_new.keys():
            detail.status(key).is_new = True
        for key in self._tree.root_keys():
            detail.status(key).in_root_clique = True

    def __repr__(self) -> str:
        return (
            f"ISAM2({len(self._theta)} variables, {self._factors.size()} factors, "
            f"{len(self._tree)} cliques)"
        )
