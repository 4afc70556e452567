from __future__ import annotations
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

import pandas as pd
import torch
from loguru import logger

from .config import RunConfig, TaskConfig
from .data import Example, ExampleSource
from .errors import NO_DATA, NumericError
from .line_search import IGDBestBall, StepSizeSearch
from .logging_utils import CSVLogger
from .model import GLMResult
from .optimizers import apply_direction, distance, make_optimizer
from .state import EMPTY, Snapshot, SnapshotStore


# ---------------------------
# One pass
# ---------------------------

def fold(machine, examples: Iterable[Example], state=EMPTY):
    for ex in examples:
        state = machine.transition(state, ex)
    return state


def merge_all(machine, states: Sequence, shape: str = "tree"):
    """Combine partial states pairwise ("tree") or left to right ("sequential")."""
    states = list(states)
    if not states:
        return EMPTY
    if shape == "sequential":
        out = states[0]
        for s in states[1:]:
            out = machine.merge(out, s)
        return out
    while len(states) > 1:
        nxt = [machine.merge(states[i], states[i + 1]) for i in range(0, len(states) - 1, 2)]
        if len(states) % 2:
            nxt.append(states[-1])
        states = nxt
    return states[0]


def _resolve_workers(n_items: int, max_workers: Optional[int]) -> int:
    cpu = os.cpu_count() or 1
    if max_workers is None:
        return max(1, min(cpu, n_items))
    return max(1, min(max_workers, n_items))


def run_pass(machine, partitions: Sequence[Sequence[Example]], max_workers: int = 1, merge_shape: str = "tree"):
    """Fold every partition into its own state, merge the partials, finalize."""
    workers = _resolve_workers(len(partitions), max_workers)
    if workers == 1:
        partials = [fold(machine, part) for part in partitions]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            partials = list(pool.map(lambda part: fold(machine, part), partitions))
    return machine.finalize(merge_all(machine, partials, merge_shape))


# ---------------------------
# Iterations
# ---------------------------

@dataclass
class FitResult:
    snapshot: Optional[Snapshot]
    result: Optional[GLMResult]
    history: pd.DataFrame
    reason: str           # converged | max_iters | no_data
    iterations: int


class IterationDriver:
    """
    Runs one pass per iteration, seeding each from the previous finalized
    snapshot, until the relative loss change drops below the tolerance.
    """

    def __init__(self, cfg: RunConfig, source: ExampleSource,
                 store: Optional[SnapshotStore] = None, csv_logger: Optional[CSVLogger] = None):
        self.cfg = cfg
        self.source = source
        self.store = store if store is not None else SnapshotStore()
        self.csv = csv_logger if csv_logger is not None else CSVLogger()
        # explicit, seeded source for partition shuffles
        self.generator = torch.Generator().manual_seed(cfg.seed)
        self.passes = 0

    def partitions(self) -> List[List[Example]]:
        if self.cfg.objective == "cox":
            return [self.source.time_ordered()]
        if self.cfg.num_partitions == 1:
            return [list(self.source)]
        return self.source.partition(self.cfg.num_partitions, self.generator)

    def _pass(self, machine):
        self.passes += 1
        return run_pass(machine, self.partitions(), self.cfg.max_workers, self.cfg.merge_shape)

    def optimizer(self, previous: Optional[Snapshot], config: Optional[TaskConfig] = None):
        cfg = self.cfg
        task = config if config is not None else cfg.task()
        kwargs = {}
        if cfg.method == "cg":
            kwargs = dict(beta=cfg.cg_beta)
        elif cfg.method == "newton":
            kwargs = dict(max_dense_dimension=cfg.max_dense_dimension, max_condition=cfg.max_condition)
        return make_optimizer(cfg.method, task, previous, **kwargs)

    def run_pass(self, previous: Optional[Snapshot], config: Optional[TaskConfig] = None):
        if self.cfg.method == "igd" and self.cfg.line_search == "best_ball":
            return self._igd_best_ball(previous, config)
        return self._pass(self.optimizer(previous, config))

    def _igd_best_ball(self, previous, config):
        bb = IGDBestBall(config if config is not None else self.cfg.task(), self.cfg.stepsizes, previous)
        snaps = self._pass(bb)
        if snaps is NO_DATA:
            return NO_DATA
        scored = self._pass(bb.scorer(snaps))
        logger.info(f"[igd best_ball] stepsize {scored.stepsize} wins with loss {scored.loss:.6g}")
        # loss of the chosen model over the full data, not the in-pass running sum
        return replace(snaps[scored.index], loss=scored.loss)

    def line_step(self, snap: Snapshot):
        """Move a CG snapshot along its direction; returns (snapshot, stepsize)."""
        if self.cfg.line_search == "fixed":
            return apply_direction(snap, self.cfg.stepsize), self.cfg.stepsize
        search = StepSizeSearch.from_direction(snap.config, snap.model, snap.direction, self.cfg.stepsizes)
        result = self._pass(search)
        return apply_direction(snap, result.stepsize), result.stepsize

    def fit(self, previous: Optional[Snapshot] = None) -> FitResult:
        cfg = self.cfg
        seed, baseline = previous, None
        reason, k = "max_iters", 0

        for k in range(1, cfg.max_iters + 1):
            passes_before = self.passes
            try:
                snap = self.run_pass(seed)
            except NumericError as e:
                logger.error(f"iteration {k}: {e}; stopping the run")
                raise
            if snap is NO_DATA:
                logger.warning(f"iteration {k}: no data, stopping")
                reason = "no_data"
                k -= 1
                break

            alpha = None
            nxt = snap
            if cfg.method == "cg":
                nxt, alpha = self.line_step(snap)

            self.store.put(k, nxt)
            dist = distance(snap, baseline)
            self.csv.log(k, snap.loss, snap.grad_norm, alpha, rows=snap.row_count,
                         mean_loss=snap.mean_loss, distance=dist,
                         passes=self.passes - passes_before,
                         condition_no=snap.condition_number)
            logger.info(f"iteration {k}: loss={snap.loss:.6g} distance={dist:.3g}")

            seed, baseline = nxt, snap
            if dist < cfg.tolerance:
                reason = "converged"
                break

        history = self.csv.close()
        logger.info(f"stopped after {k} iterations: {reason}")
        result = None if seed is None else GLMResult.from_snapshot(seed, num_iterations=k)
        return FitResult(snapshot=seed, result=result, history=history, reason=reason, iterations=k)
