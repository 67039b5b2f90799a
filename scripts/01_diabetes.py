from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
from pathlib import Path

_mpl_cache_dir = Path(tempfile.gettempdir()) / "matplotlib"
_mpl_cache_dir.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("MPLCONFIGDIR", str(_mpl_cache_dir))

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from PPGLM.config import (  # noqa: E402
    DIABETES_FILE,
    DIABETES_SEED,
    MCMC_PARAMS,
    OUTPUTS_DIR,
    PROJ_NCLUSTERS,
    PROJ_NDRAWS_PRED,
)
from PPGLM.data import load_diabetes  # noqa: E402
from PPGLM.reports import run_diabetes_report  # noqa: E402
from PPGLM.utils import setup_logging  # noqa: E402

logger = logging.getLogger("diabetes")


def main() -> None:
    parser = argparse.ArgumentParser(description="Bayesian logistic regression and variable selection for diabetes.")
    parser.add_argument("--data", type=Path, default=DIABETES_FILE, help="Pima diabetes CSV.")
    parser.add_argument("--outdir", type=Path, default=OUTPUTS_DIR, help="Output directory (default: outputs/).")
    parser.add_argument("--warmup", type=int, default=MCMC_PARAMS["warmup"])
    parser.add_argument("--samples", type=int, default=MCMC_PARAMS["mcmcsamples"], help="Post-warmup draws per chain.")
    parser.add_argument("--chains", type=int, default=MCMC_PARAMS["chains"])
    parser.add_argument("--seed", type=int, default=DIABETES_SEED)
    parser.add_argument("--nterms-max", type=int, default=None, help="Largest submodel in the search.")
    parser.add_argument("--validate-search", action="store_true", help="Repeat the search inside LOO.")
    parser.add_argument("--nloo", type=int, default=None, help="Left-out observations for --validate-search.")
    parser.add_argument("--nclusters", type=int, default=PROJ_NCLUSTERS)
    parser.add_argument("--ndraws-pred", type=int, default=PROJ_NDRAWS_PRED)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    for name in ("warmup", "samples", "chains"):
        if getattr(args, name) <= 0:
            raise SystemExit(f"--{name} must be a positive integer.")
    if args.nloo is not None and args.nloo <= 0:
        raise SystemExit("--nloo must be a positive integer.")
    if not args.data.exists():
        raise SystemExit(f"Diabetes data not found: {args.data}")

    df = load_diabetes(args.data)
    params = {"warmup": args.warmup, "mcmcsamples": args.samples, "chains": args.chains}
    results = run_diabetes_report(
        df,
        args.outdir,
        params=params,
        seed=args.seed,
        nterms_max=args.nterms_max,
        validate_search=args.validate_search,
        nloo=args.nloo,
        nclusters=args.nclusters,
        ndraws_pred=args.ndraws_pred,
    )

    logger.info("Selected terms: %s", ", ".join(results["selected_terms"]) or "(intercept only)")
    logger.info("Wrote diabetes report to %s/", args.outdir)


if __name__ == "__main__":
    main()
