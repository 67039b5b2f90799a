from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
OUTPUTS_DIR = PROJECT_ROOT / "outputs"
FIGURES_DIR = OUTPUTS_DIR / "figures"
TABLES_DIR = OUTPUTS_DIR / "tables"
LOGS_DIR = OUTPUTS_DIR / "logs"

DIABETES_FILE = DATA_DIR / "diabetes.csv"
BODYFAT_FILE = DATA_DIR / "bodyfat.txt"
BODYFAT_SEP = ";"

# Diabetes (Pima) report
DIABETES_TARGET = "outcome"
DIABETES_PREDICTORS = [
    "pregnancies",
    "glucose",
    "bloodpressure",
    "skinthickness",
    "insulin",
    "bmi",
    "dpf",
    "age",
]
# Zero is a missing-value code for these measurements, not a valid value.
DIABETES_NONZERO_COLS = ["glucose", "bloodpressure", "skinthickness", "insulin", "bmi", "dpf"]
# normalized source header -> analysis name
DIABETES_ALIASES = {
    "diabetespedigreefunction": "dpf",
    "blood_pressure": "bloodpressure",
    "skin_thickness": "skinthickness",
}
DIABETES_SEED = 14124869

# Body fat report
BODYFAT_TARGET = "siri"
BODYFAT_PREDICTORS = [
    "age",
    "weight_lbs",
    "height_in",
    "neck",
    "chest",
    "abdomen",
    "hip",
    "thigh",
    "knee",
    "ankle",
    "biceps",
    "forearm",
    "wrist",
]
BODYFAT_ALIASES = {
    "weight": "weight_lbs",
    "weight_lb": "weight_lbs",
    "height": "height_in",
}
BODYFAT_SEED = 1513306866
BODYFAT_NOISE_VARS = 87

# Inference defaults
MCMC_PARAMS = {"fittype": "mcmc", "warmup": 1000, "mcmcsamples": 1000, "chains": 4, "target_accept": 0.8}
HORSESHOE_TARGET_ACCEPT = 0.95

# Priors
STUDENT_T_PRIOR = {"prior_df": 7.0, "prior_scale": 2.5, "intercept_df": 7.0, "intercept_scale": 2.5}
NORMAL_PRIOR = {"prior_scale": 2.5, "intercept_scale": 2.5}
HORSESHOE_SLAB_DF = 4.0
HORSESHOE_SLAB_SCALE = 2.5
DIABETES_P0 = 2
BODYFAT_P0 = 5

CREDIBLE_INTERVAL = 90

# Projection predictive defaults
PROJ_NCLUSTERS = 20
PROJ_NDRAWS_PRED = 400
PROJ_NDRAWS = 400
# 2 * Phi(-1): one-SE rule
SUGGEST_SIZE_ALPHA = 0.3173105078629141
DIABETES_SUGGEST_ALPHA = 0.2

PROB_BINS = 10
BOOTSTRAP_N = 100
BOOTSTRAP_SE_N = 500
