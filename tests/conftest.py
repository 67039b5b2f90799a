import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from PPGLM.config import BODYFAT_PREDICTORS, DIABETES_PREDICTORS

FAST_MCMC = {"fittype": "mcmc", "warmup": 100, "mcmcsamples": 100, "chains": 1}


@pytest.fixture
def fast_params():
    return dict(FAST_MCMC)


@pytest.fixture(scope="session")
def diabetes_df():
    """Pima-like frame: positive measurements, 0/1 outcome driven by glucose and bmi."""

    rng = np.random.default_rng(0)
    n = 150
    df = pd.DataFrame({
        "pregnancies": rng.integers(0, 10, n),
        "glucose": rng.normal(120, 30, n).clip(50, 200).round(),
        "bloodpressure": rng.normal(70, 12, n).clip(30, 120).round(),
        "skinthickness": rng.normal(29, 10, n).clip(5, 60).round(),
        "insulin": rng.normal(150, 80, n).clip(15, 600).round(),
        "bmi": rng.normal(32, 7, n).clip(18, 60).round(1),
        "dpf": rng.gamma(2.0, 0.25, n).clip(0.08, 2.4).round(3),
        "age": rng.integers(21, 70, n),
    })
    logits = -0.8 + 1.2 * (df["glucose"] - 120) / 30 + 0.6 * (df["bmi"] - 32) / 7
    df["outcome"] = rng.binomial(1, expit(logits.to_numpy()))
    return df[DIABETES_PREDICTORS + ["outcome"]]


@pytest.fixture(scope="session")
def bodyfat_df():
    """Body-fat-like frame: siri is linear in abdomen and weight, plus noise."""

    rng = np.random.default_rng(1)
    n = 120
    centres = {
        "age": 45, "weight_lbs": 180, "height_in": 70, "neck": 38, "chest": 100, "abdomen": 92, "hip": 100,
        "thigh": 59, "knee": 38, "ankle": 23, "biceps": 32, "forearm": 29, "wrist": 18,
    }
    df = pd.DataFrame({col: rng.normal(centre, 0.08 * centre, n).round(1) for col, centre in centres.items()})
    df["siri"] = (-40 + 0.9 * df["abdomen"] - 0.12 * df["weight_lbs"] + rng.normal(0, 3, n)).round(1)
    return df[BODYFAT_PREDICTORS + ["siri"]]
