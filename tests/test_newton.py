import math

import pytest
import torch

from convexagg.config import RunConfig, TaskConfig
from convexagg.data import Example, ExampleSource, SurvivalLabel
from convexagg.driver import IterationDriver, fold, run_pass
from convexagg.errors import ConfigError, NumericError, SizeLimitError
from convexagg.model import GLMResult
from convexagg.newton import Newton
from convexagg.state import EMPTY


def test_scenario_c_ridge_one_shot_matches_ols():
    xs, ys = [1.0, 2.0, 3.0], [2.0, 3.0, 7.0]
    machine = Newton(TaskConfig(dimension=1, regularization=0.0, objective="ridge"))
    snap = machine.finalize(fold(machine, [Example([x], y) for x, y in zip(xs, ys)]))
    ols = sum(x * y for x, y in zip(xs, ys)) / sum(x * x for x in xs)
    assert abs(float(snap.model[0]) - ols) < 1e-9
    assert snap.condition_number == pytest.approx(1.0)


def test_scenario_b_separable_logistic_converges():
    # (1, 1) -> 1 and (-1, 1) -> 0 are separated by the first coordinate
    source = ExampleSource(
        torch.tensor([[1.0, 1.0], [-1.0, 1.0]], dtype=torch.float64),
        torch.tensor([1.0, 0.0], dtype=torch.float64),
    )
    cfg = RunConfig(objective="logistic", method="newton", dimension=2,
                    regularization=1.0, tolerance=1e-6, max_iters=5)
    fit = IterationDriver(cfg, source).fit()
    assert fit.reason == "converged"
    assert fit.iterations <= 5
    coef = fit.result.coef
    assert torch.isfinite(coef).all()
    assert coef[0] > 0
    assert abs(float(coef[1])) < 1e-6
    assert fit.history["distance"].iloc[-1] < 1e-6


def test_singular_hessian_is_surfaced():
    examples = [Example([1.0, 1.0], y) for y in (1.0, 2.0, 3.0)]
    machine = Newton(TaskConfig(dimension=2, objective="ridge"))
    with pytest.raises(NumericError):
        machine.finalize(fold(machine, examples))


def test_singular_hessian_stops_the_driver():
    source = ExampleSource(torch.ones(4, 2, dtype=torch.float64), torch.arange(4, dtype=torch.float64))
    cfg = RunConfig(objective="ridge", method="newton", dimension=2)
    with pytest.raises(NumericError):
        IterationDriver(cfg, source).fit()


def test_regularization_makes_collinear_hessian_solvable():
    examples = [Example([1.0, 1.0], y) for y in (1.0, 2.0, 3.0)]
    machine = Newton(TaskConfig(dimension=2, regularization=1.0, objective="ridge"))
    snap = machine.finalize(fold(machine, examples))
    assert torch.isfinite(snap.model).all()


def test_size_limit():
    with pytest.raises(SizeLimitError):
        Newton(TaskConfig(dimension=10, objective="ridge"), max_dense_dimension=5)
    # SizeLimitError is a configuration problem
    assert issubclass(SizeLimitError, ConfigError)


@pytest.mark.parametrize("objective", ["svm", "lasso"])
def test_objectives_without_hessian_rejected(objective):
    with pytest.raises(ConfigError):
        Newton(TaskConfig(dimension=2, objective=objective))


def test_wald_statistics(regression_source):
    machine = Newton(TaskConfig(dimension=3, objective="ridge"))
    snap = machine.finalize(fold(machine, regression_source))
    res = GLMResult.from_snapshot(snap)

    H = sum(torch.outer(ex.features, ex.features) for ex in regression_source)
    se = torch.sqrt(torch.linalg.inv(H).diagonal())
    assert torch.allclose(res.std_err, se)
    assert torch.allclose(res.z_stats, res.coef / se)
    assert ((res.p_values >= 0) & (res.p_values <= 1)).all()
    # unit-variance Wald statistics: the -2 coefficient stands far out
    assert float(res.p_values[1]) < 1e-3
    assert res.condition_no == pytest.approx(float(torch.linalg.cond(H)))
    table = res.summary()
    assert list(table.columns) == ["coef", "std_err", "z_stats", "p_values"]
    assert len(table) == 3


def test_p_value_of_zero_coefficient_is_one():
    cfg = TaskConfig(dimension=1, objective="ridge")
    machine = Newton(cfg)
    # symmetric data: OLS slope is exactly 0
    snap = machine.finalize(fold(machine, [Example([1.0], 1.0), Example([1.0], -1.0)]))
    res = GLMResult.from_snapshot(snap)
    assert float(res.coef[0]) == 0.0
    assert float(res.p_values[0]) == pytest.approx(1.0)


# ---------------------------
# Cox proportional hazards
# ---------------------------

def _breslow_nll(w, X, times, events):
    eta = X @ w
    total = torch.zeros((), dtype=torch.float64)
    for i in range(len(times)):
        if events[i]:
            risk = times >= times[i]
            total = total - (eta[i] - torch.logsumexp(eta[risk], 0))
    return total


def _cox_pass(examples, previous=None):
    source = ExampleSource.from_examples(examples)
    machine = Newton(TaskConfig(dimension=2, objective="cox"), previous)
    return machine, run_pass(machine, [source.time_ordered()])


def test_cox_newton_step_matches_brute_force(survival_examples):
    _, snap = _cox_pass(survival_examples)
    X = torch.stack([e.features for e in survival_examples])
    times = torch.tensor([e.label.time for e in survival_examples], dtype=torch.float64)
    events = [e.label.event for e in survival_examples]
    w0 = torch.zeros(2, dtype=torch.float64)

    def f(w):
        return _breslow_nll(w, X, times, events)

    g = torch.autograd.functional.jacobian(f, w0)
    H = torch.autograd.functional.hessian(f, w0)
    assert snap.loss == pytest.approx(float(f(w0)))
    assert snap.grad_norm == pytest.approx(float(torch.linalg.norm(g)))
    assert torch.allclose(snap.model, w0 - torch.linalg.solve(H, g))


def test_cox_ties_within_tolerance(survival_examples):
    nudged = [
        Example(e.features, SurvivalLabel(e.label.time + (5e-7 if i == 2 else 0.0), e.label.event))
        for i, e in enumerate(survival_examples)
    ]
    _, exact = _cox_pass(survival_examples)
    _, near = _cox_pass(nudged)
    assert near.loss == pytest.approx(exact.loss, rel=1e-12)
    assert torch.allclose(near.model, exact.model)

    spread = [
        Example(e.features, SurvivalLabel(e.label.time + (1e-3 if i == 2 else 0.0), e.label.event))
        for i, e in enumerate(survival_examples)
    ]
    _, apart = _cox_pass(spread)
    assert apart.loss != pytest.approx(exact.loss, rel=1e-9)


def _cox_at(w, examples):
    from convexagg.state import Snapshot

    cfg = TaskConfig(dimension=w.numel(), objective="cox")
    start = Snapshot(config=cfg, model=w, loss=0.0, row_count=1, method="newton")
    machine = Newton(previous=start)
    return machine.finalize(fold(machine, examples))


def test_cox_pools_ties_after_the_first_group():
    w = torch.tensor([0.4, -0.2], dtype=torch.float64)
    X = torch.tensor([[1.0, 0.5], [-0.3, 2.0], [0.8, -1.0], [0.2, 0.1]], dtype=torch.float64)
    times = torch.tensor([5.0, 3.0, 3.0, 1.0], dtype=torch.float64)
    events = [True, True, True, True]
    examples = [Example(X[i], SurvivalLabel(float(times[i]), events[i])) for i in range(4)]

    snap = _cox_at(w, examples)

    def f(v):
        return _breslow_nll(v, X, times, events)

    g = torch.autograd.functional.jacobian(f, w)
    H = torch.autograd.functional.hessian(f, w)
    assert snap.loss == pytest.approx(float(f(w)), rel=1e-12)
    assert snap.grad_norm == pytest.approx(float(torch.linalg.norm(g)), rel=1e-12)
    assert torch.allclose(snap.model, w - torch.linalg.solve(H, g))


def test_cox_rejects_later_out_of_order_time():
    machine = Newton(TaskConfig(dimension=1, objective="cox"))
    examples = [Example([x], SurvivalLabel(t, True)) for x, t in [(0.1, 10.0), (0.2, 5.0), (0.3, 7.0)]]
    with pytest.raises(ConfigError):
        fold(machine, examples)


def test_cox_overflowing_risk_score_is_numeric_error():
    from convexagg.state import Snapshot

    cfg = TaskConfig(dimension=1, objective="cox")
    start = Snapshot(config=cfg, model=torch.tensor([800.0], dtype=torch.float64),
                     loss=0.0, row_count=1, method="newton")
    machine = Newton(previous=start)
    with pytest.raises(NumericError):
        machine.transition(EMPTY, Example([1.0], SurvivalLabel(1.0, True)))


def test_cox_finalize_is_idempotent(survival_examples):
    source = ExampleSource.from_examples(survival_examples)
    machine = Newton(TaskConfig(dimension=2, objective="cox"))
    state = fold(machine, source.time_ordered())
    a, b = machine.finalize(state), machine.finalize(state)
    assert a.loss == b.loss
    assert torch.equal(a.model, b.model)


def test_cox_requires_descending_times(survival_examples):
    machine = Newton(TaskConfig(dimension=2, objective="cox"))
    ascending = list(reversed(survival_examples))
    with pytest.raises(ConfigError):
        fold(machine, ascending)


def test_cox_partials_do_not_merge(survival_examples):
    machine = Newton(TaskConfig(dimension=2, objective="cox"))
    ordered = ExampleSource.from_examples(survival_examples).time_ordered()
    left, right = fold(machine, ordered[:3]), fold(machine, ordered[3:])
    with pytest.raises(ConfigError):
        machine.merge(left, right)
    assert machine.merge(EMPTY, left) is left


def test_cox_driver_loss_decreases():
    from convexagg.data import make_dataset

    source = make_dataset("survival", 60, 2, torch.Generator().manual_seed(5))
    cfg = RunConfig(objective="cox", method="newton", dimension=2, max_iters=10, tolerance=1e-8)
    fit = IterationDriver(cfg, source).fit()
    losses = fit.history["loss"].tolist()
    assert losses[-1] < losses[0]
    assert fit.result.p_values is not None
    assert math.isfinite(fit.result.condition_no)


def test_snapshot_blob_round_trip(regression_source, tmp_path):
    from convexagg.state import SnapshotStore, snapshot_from_blob, snapshot_to_blob

    machine = Newton(TaskConfig(dimension=3, regularization=0.5, objective="ridge"))
    snap = machine.finalize(fold(machine, regression_source))
    blob = snapshot_to_blob(snap)
    assert blob.numel() == 4 * 3 + 13
    # flags sit inside the accumulator; the row count closes the blob
    assert float(blob[-1]) == 20.0
    assert blob[-4:-1].tolist() == [0.0, 0.0, 1.0]

    back = snapshot_from_blob(blob)
    assert back.config == snap.config
    assert back.method == "newton"
    assert back.row_count == 20
    assert back.iteration == 1
    assert back.direction is None
    assert torch.equal(back.model, snap.model)
    assert torch.equal(back.inv_hessian_diag, snap.inv_hessian_diag)
    assert back.condition_number == snap.condition_number

    store = SnapshotStore(str(tmp_path))
    store.put(1, snap)
    reloaded = SnapshotStore(str(tmp_path)).get(1)
    assert torch.equal(reloaded.model, snap.model)
    assert reloaded.loss == snap.loss

    with pytest.raises(ConfigError):
        snapshot_from_blob(blob[:-1])
