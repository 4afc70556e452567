import pytest
import torch
import torch.nn.functional as F

from convexagg.data import Example, SurvivalLabel
from convexagg.errors import ConfigError
from convexagg.objectives import L1Penalty, L2Penalty, make_objective

W = torch.tensor([0.3, -0.7, 1.1], dtype=torch.float64)
X = torch.tensor([1.0, 2.0, -0.5], dtype=torch.float64)


def test_hinge_gradient_inside_margin():
    obj = make_objective("svm")
    ex = Example([1.0, 0.0], -1.0)
    w = torch.tensor([0.5, 0.0], dtype=torch.float64)
    assert obj.loss(w, ex) == pytest.approx(1.5)
    assert torch.equal(obj.gradient(w, ex), torch.tensor([1.0, 0.0], dtype=torch.float64))


def test_hinge_gradient_is_zero_on_the_margin():
    obj = make_objective("svm")
    ex = Example([1.0, 0.0], 1.0)
    w = torch.tensor([1.0, 3.0], dtype=torch.float64)
    assert obj.loss(w, ex) == 0.0
    assert torch.equal(obj.gradient(w, ex), torch.zeros(2, dtype=torch.float64))


def test_hinge_accepts_boolean_labels():
    obj = make_objective("svm")
    w = torch.tensor([0.5, 0.0], dtype=torch.float64)
    assert obj.loss(w, Example([1.0, 0.0], True)) == obj.loss(w, Example([1.0, 0.0], 1.0))
    assert obj.loss(w, Example([1.0, 0.0], False)) == obj.loss(w, Example([1.0, 0.0], -1.0))


def test_hinge_has_no_hessian():
    obj = make_objective("svm")
    assert not obj.has_hessian
    with pytest.raises(NotImplementedError):
        obj.hessian(W, Example(X, 1.0))


@pytest.mark.parametrize("label", [0.0, 1.0])
def test_logistic_matches_autograd(label):
    obj = make_objective("logistic")
    ex = Example(X, label)
    z = 1.0 if label > 0 else -1.0

    def f(w):
        return F.softplus(-z * torch.dot(w, X))

    assert obj.loss(W, ex) == pytest.approx(float(f(W)))
    g = torch.autograd.functional.jacobian(f, W)
    H = torch.autograd.functional.hessian(f, W)
    assert torch.allclose(obj.gradient(W, ex), g)
    assert torch.allclose(obj.hessian(W, ex), H)


def test_squared_loss_matches_autograd():
    obj = make_objective("ridge")
    ex = Example(X, 0.25)

    def f(w):
        return 0.5 * (0.25 - torch.dot(w, X)) ** 2

    assert obj.loss(W, ex) == pytest.approx(float(f(W)))
    assert torch.allclose(obj.gradient(W, ex), torch.autograd.functional.jacobian(f, W))
    assert torch.allclose(obj.hessian(W, ex), torch.autograd.functional.hessian(f, W))


def test_predictions():
    w = torch.tensor([1.0, -1.0], dtype=torch.float64)
    assert make_objective("svm").predict(w, [2.0, 1.0]) is True
    assert make_objective("svm").predict(w, [1.0, 2.0]) is False
    # sigmoid(0) == 0.5 is not above the threshold
    assert make_objective("logistic").predict(w, [1.0, 1.0]) is False
    assert make_objective("logistic").predict(w, [3.0, 1.0]) is True
    assert make_objective("ridge").predict(w, [3.0, 1.0]) == pytest.approx(2.0)
    assert make_objective("cox").predict(w, [3.0, 1.0]) == pytest.approx(2.0)


def test_penalties():
    l2, l1 = L2Penalty(), L1Penalty()
    w = torch.tensor([0.5, -0.05, 0.0], dtype=torch.float64)
    assert l2.loss(w, 2.0) == pytest.approx(0.5 * 2.0 * (0.25 + 0.0025))
    assert torch.allclose(l2.hessian(3, 2.0), 2.0 * torch.eye(3, dtype=torch.float64))
    assert l1.loss(w, 2.0) == pytest.approx(2.0 * 0.55)
    assert torch.equal(l1.gradient(w, 1.0), torch.tensor([1.0, -1.0, 0.0], dtype=torch.float64))
    # soft threshold at 0.1
    assert torch.allclose(l1.prox(w, 0.1, 1.0), torch.tensor([0.4, 0.0, 0.0], dtype=torch.float64))
    with pytest.raises(ConfigError):
        l1.hessian(3, 1.0)


def test_lasso_uses_l1_penalty():
    assert isinstance(make_objective("lasso").penalty, L1Penalty)
    assert isinstance(make_objective("ridge").penalty, L2Penalty)


def test_cox_has_no_per_example_loss():
    obj = make_objective("cox")
    assert obj.risk_set
    with pytest.raises(NotImplementedError):
        obj.loss(W, Example(X, SurvivalLabel(1.0, True)))


def test_unknown_objective():
    with pytest.raises(ConfigError):
        make_objective("hinge2")


def test_example_coerces_features():
    ex = Example([[1, 2]], 1)
    assert ex.features.dtype == torch.float64
    assert ex.features.shape == (2,)
    assert ex.label == 1.0
    surv = Example([1.0], (2.5, 1))
    assert surv.label == SurvivalLabel(2.5, True)


def test_every_configured_objective_is_registered():
    from convexagg.config import OBJECTIVES

    assert [make_objective(kind).kind for kind in OBJECTIVES] == list(OBJECTIVES)
