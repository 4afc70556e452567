import argparse
import torch

from convexagg.config import OBJECTIVES, METHODS, RunConfig
from convexagg.data import make_dataset
from convexagg.driver import IterationDriver
from convexagg.logging_utils import CSVLogger, configure_logging
from convexagg.state import SnapshotStore

DEFAULT_DATASET = {
    "svm": "separable",
    "logistic": "binary",
    "ridge": "linear",
    "lasso": "linear",
    "cox": "survival",
}


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--objective", type=str, default="svm", choices=list(OBJECTIVES))
    ap.add_argument("--method", type=str, default="igd", choices=list(METHODS))
    ap.add_argument("--dataset", type=str, default=None,
                    choices=["separable", "binary", "linear", "survival"])
    ap.add_argument("--m", type=int, default=1000)
    ap.add_argument("--d", type=int, default=5)
    ap.add_argument("--iters", type=int, default=50)
    ap.add_argument("--stepsize", type=float, default=0.01)
    ap.add_argument("--lam", type=float, default=0.0)
    ap.add_argument("--tol", type=float, default=1e-6)
    ap.add_argument("--partitions", type=int, default=4)
    ap.add_argument("--workers", type=int, default=1)
    ap.add_argument("--merge", type=str, default="tree", choices=["tree", "sequential"])
    ap.add_argument("--line_search", type=str, default="fixed", choices=["fixed", "best_ball"])
    ap.add_argument("--stepsizes", type=str, default="1,0.5,0.25,0.125,0.0625",
                    help="Comma separated candidates for --line_search best_ball.")
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--data_seed", type=int, default=0,
                    help="Seed used ONLY for dataset generation (kept constant across runs).")
    ap.add_argument("--save_states", action="store_true",
                    help="Save every finalized state under results/states/.")
    ap.add_argument("--log_level", type=str, default="INFO")
    args = ap.parse_args()

    configure_logging(args.log_level)

    cfg = RunConfig(
        seed=args.seed,
        objective=args.objective,
        method=args.method,
        dimension=args.d,
        stepsize=args.stepsize,
        regularization=args.lam,
        tolerance=args.tol,
        max_iters=args.iters,
        num_partitions=args.partitions,
        max_workers=args.workers,
        merge_shape=args.merge,
        line_search=args.line_search,
        stepsizes=tuple(float(s) for s in args.stepsizes.split(",") if s),
    )

    # FIXED dataset across runs; only the partition shuffles follow --seed
    dataset = args.dataset or DEFAULT_DATASET[cfg.objective]
    source = make_dataset(dataset, args.m, args.d, torch.Generator().manual_seed(args.data_seed))

    tag = f"{cfg.objective}_{cfg.method}_{dataset}_m{args.m}_d{args.d}_dataseed{args.data_seed}_seed{cfg.seed}"
    logger = CSVLogger(out_csv=f"{cfg.results_dir}/{tag}.csv")
    store = SnapshotStore(f"{cfg.results_dir}/states/{tag}" if args.save_states else None)

    fit = IterationDriver(cfg, source, store=store, csv_logger=logger).fit()

    print(f"Done ({fit.reason}, {fit.iterations} iterations). Final loss:",
          None if fit.snapshot is None else fit.snapshot.loss)
    if fit.result is not None:
        print(fit.result.summary().to_string())
        if fit.result.condition_no is not None:
            print("condition number:", fit.result.condition_no)


if __name__ == "__main__":
    main()
