import logging
import re

import numpy as np
import pandas as pd

from PPGLM.config import (
    BODYFAT_ALIASES,
    BODYFAT_FILE,
    BODYFAT_PREDICTORS,
    BODYFAT_SEP,
    BODYFAT_TARGET,
    DIABETES_ALIASES,
    DIABETES_FILE,
    DIABETES_NONZERO_COLS,
    DIABETES_PREDICTORS,
    DIABETES_TARGET,
)

logger = logging.getLogger(__name__)

_NORMALIZE_RE = re.compile(r"[^0-9a-zA-Z]+")


def _normalize_name(name):
    return _NORMALIZE_RE.sub("_", str(name)).strip("_").lower()


def normalize_columns(df, aliases=None):
    '''
    Rename columns to lowercase snake case, then apply aliases
    :param df: raw DataFrame
    :param aliases: dict of normalized name -> canonical name
    :return: renamed DataFrame; raises ValueError if two columns map to the same name
    '''
    aliases = aliases or {}
    mapping = {}
    seen = {}
    for col in df.columns:
        norm = _normalize_name(col)
        norm = aliases.get(norm, norm)
        if norm in seen:
            raise ValueError(f"Columns {seen[norm]!r} and {col!r} both map to {norm!r}")
        seen[norm] = col
        mapping[col] = norm
    return df.rename(columns=mapping)


def assert_required_columns(df, required):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")


def load_diabetes(path=DIABETES_FILE):
    df = normalize_columns(pd.read_csv(path), DIABETES_ALIASES)
    assert_required_columns(df, DIABETES_PREDICTORS + [DIABETES_TARGET])
    logger.info("Loaded %d rows from %s", len(df), path)
    return df[DIABETES_PREDICTORS + [DIABETES_TARGET]]


def clean_diabetes(df, nonzero_cols=DIABETES_NONZERO_COLS, target=DIABETES_TARGET):
    '''
    Drop rows where a measurement that cannot be zero is zero or missing
    :param df: normalized diabetes DataFrame
    :param nonzero_cols: columns where 0 codes a missing measurement
    :param target: outcome column, must be 0/1
    :return: cleaned DataFrame with an integer outcome
    '''
    nonzero_cols = list(nonzero_cols)
    assert_required_columns(df, nonzero_cols + [target])

    invalid = df[nonzero_cols].isna().any(axis=1) | (df[nonzero_cols] == 0).any(axis=1) | df[target].isna()
    out = df.loc[~invalid].reset_index(drop=True)

    values = set(out[target].unique().tolist())
    if not values.issubset({0, 1}):
        raise ValueError(f"Outcome {target!r} must be binary {{0,1}}; observed values: {sorted(map(str, values))}")
    out[target] = out[target].astype(int)

    logger.info("Removed %d of %d rows with invalid zero measurements", int(invalid.sum()), len(df))
    return out


def load_bodyfat(path=BODYFAT_FILE, sep=BODYFAT_SEP):
    df = normalize_columns(pd.read_csv(path, sep=sep), BODYFAT_ALIASES)
    assert_required_columns(df, BODYFAT_PREDICTORS + [BODYFAT_TARGET])
    logger.info("Loaded %d rows from %s", len(df), path)
    return df


def clean_bodyfat(df, predictors=BODYFAT_PREDICTORS, target=BODYFAT_TARGET):
    '''
    Drop rows with a missing target or predictor, or a non-positive body measurement
    '''
    predictors = list(predictors)
    assert_required_columns(df, predictors + [target])

    missing = df[predictors + [target]].isna().any(axis=1)
    nonpositive = (df[predictors] <= 0).any(axis=1)
    invalid = missing | nonpositive
    out = df.loc[~invalid].reset_index(drop=True)

    logger.info(
        "Removed %d of %d rows (%d missing, %d non-positive)",
        int(invalid.sum()),
        len(df),
        int(missing.sum()),
        int((nonpositive & ~missing).sum()),
    )
    return out


def standardize(df, columns):
    '''
    Center columns and scale them to unit sample standard deviation
    :param df: DataFrame
    :param columns: columns to scale
    :return: scaled copy, and a table of the centers and scales used
    '''
    columns = list(columns)
    assert_required_columns(df, columns)
    out = df.copy()
    rows = []
    for col in columns:
        values = out[col].astype(float)
        center = float(values.mean())
        scale = float(values.std(ddof=1))
        if not np.isfinite(scale) or scale == 0:
            raise ValueError(f"Column {col!r} is constant and cannot be standardized")
        out[col] = (values - center) / scale
        rows.append({"column": col, "center": center, "scale": scale})
    return out, pd.DataFrame(rows)


def add_noise_columns(df, n_noise, seed, prefix="noise"):
    '''
    Append n_noise iid standard normal columns named prefix1..prefixK
    :return: extended DataFrame and the new column names
    '''
    if n_noise < 0:
        raise ValueError("n_noise must be non-negative")
    names = [f"{prefix}{i}" for i in range(1, n_noise + 1)]
    clash = [c for c in names if c in df.columns]
    if clash:
        raise ValueError(f"Noise column names already in use: {clash}")

    rng = np.random.default_rng(seed)
    noise = pd.DataFrame(rng.standard_normal((len(df), n_noise)), columns=names, index=df.index)
    return pd.concat([df, noise], axis=1), names


def summarize_columns(df):
    n = len(df)
    rows = []
    for col in df.columns.astype(str).tolist():
        s = pd.to_numeric(df[col], errors="coerce")
        rows.append(
            {
                "column": col,
                "n": n,
                "n_missing": int(df[col].isna().sum()),
                "mean": round(float(s.mean()), 6) if n else np.nan,
                "sd": round(float(s.std(ddof=1)), 6) if n > 1 else np.nan,
                "min": float(s.min()) if n else np.nan,
                "max": float(s.max()) if n else np.nan,
            }
        )
    return pd.DataFrame(rows)
