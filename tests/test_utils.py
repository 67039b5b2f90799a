import numpy as np
import pandas as pd
import pytest

from PPGLM.utils import (
    PatsyTransformer,
    build_formula,
    credible_bounds,
    formula_lhs,
    formula_rhs,
    horseshoe_global_scale,
    thin_draws,
)


def test_build_formula():
    assert build_formula("y", ["a", "b"]) == "y ~ a + b"
    assert build_formula("y", []) == "y ~ 1"


def test_formula_sides():
    assert formula_lhs("outcome ~ glucose + bmi") == "outcome"
    assert formula_rhs("outcome ~ glucose + bmi") == "glucose + bmi"
    with pytest.raises(ValueError):
        formula_lhs("~ glucose")
    with pytest.raises(ValueError):
        formula_rhs("outcome glucose")


def test_patsy_transformer_drops_intercept_and_reuses_design():
    train = pd.DataFrame({"y": [0, 1, 0, 1], "a": [1.0, 2.0, 3.0, 4.0], "b": [0.5, 0.1, 0.2, 0.3]})
    transformer = PatsyTransformer("y ~ a + b").fit(train)

    assert transformer.column_names == ["a", "b"]
    new = pd.DataFrame({"a": [10.0], "b": [1.0]})
    out = transformer.transform(new)
    assert list(out.columns) == ["a", "b"]
    assert out.iloc[0].tolist() == [10.0, 1.0]


def test_patsy_transformer_intercept_only():
    train = pd.DataFrame({"y": [0, 1, 1]})
    out = PatsyTransformer("y ~ 1").fit(train).transform(train)
    assert out.shape == (3, 0)


def test_patsy_transformer_requires_fit():
    with pytest.raises(ValueError):
        PatsyTransformer("y ~ a").transform(pd.DataFrame({"a": [1.0]}))


def test_horseshoe_global_scale():
    # p0 / (p - p0) / sqrt(n)
    assert horseshoe_global_scale(2, 8, 392) == pytest.approx(2 / 6 / np.sqrt(392))
    assert horseshoe_global_scale(5, 13, 251, sigma=2.0) == pytest.approx(5 / 8 * 2.0 / np.sqrt(251))
    with pytest.raises(ValueError):
        horseshoe_global_scale(8, 8, 100)
    with pytest.raises(ValueError):
        horseshoe_global_scale(2, 8, 0)


def test_credible_bounds():
    assert credible_bounds(90) == (5.0, 95.0)
    with pytest.raises(ValueError):
        credible_bounds(100)


def test_thin_draws():
    assert thin_draws(10, None).tolist() == list(range(10))
    assert thin_draws(10, 20).tolist() == list(range(10))
    idx = thin_draws(1000, 4)
    assert idx.tolist() == [0, 333, 666, 999]
    with pytest.raises(ValueError):
        thin_draws(10, 0)
