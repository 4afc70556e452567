import argparse
import os
from pathlib import Path
from typing import List

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

METHOD_LABELS = {
    "igd": "IGD",
    "cg": "Conjugate gradient",
    "newton": "Newton",
}

# For log-plots (must be > 0)
LOSS_FLOOR = 1e-12


# ---------------------------
# Loading / cleaning
# ---------------------------

def load_runs(objective: str, dataset: str, m: int, d: int, seeds: List[int], methods: List[str],
              root: str = "results") -> pd.DataFrame:
    """
    Naming scheme written by run.py:
      {objective}_{method}_{dataset}_m{m}_d{d}_dataseed{X}_seed{seed}.csv
    """
    root = Path(root)
    if not root.exists():
        raise RuntimeError(f"{root}/ folder not found. Run from the project root.")

    frames = []
    missing = []
    for seed in seeds:
        for method in methods:
            pattern = f"{objective}_{method}_{dataset}_m{m}_d{d}_dataseed*_seed{seed}.csv"
            hits = sorted(root.glob(pattern), key=lambda p: str(p))
            if not hits:
                missing.append(pattern)
                continue
            df = pd.read_csv(hits[0])
            df["seed"] = seed
            df["method"] = method
            frames.append(df)

    if not frames:
        msg = ["No CSVs found for the requested selection."]
        msg.extend(f"  {p}" for p in missing[:12])
        raise RuntimeError("\n".join(msg))
    return pd.concat(frames, ignore_index=True)


def clean_runs(df: pd.DataFrame) -> pd.DataFrame:
    """
    - Coerce numeric cols, inf -> NaN (distance is inf on the first iteration)
    - One row per (method, seed, iter)
    - Cumulative data passes per run
    """
    df = df.copy()
    for col in ["iter", "loss", "grad_norm", "alpha", "elapsed_sec", "rows", "distance", "passes"]:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    df.replace([np.inf, -np.inf], np.nan, inplace=True)
    if "iter" not in df.columns:
        raise RuntimeError("CSV must contain an iter column.")

    df = df.sort_values(["method", "seed", "iter"], kind="stable")
    df = df.groupby(["method", "seed", "iter"], as_index=False).tail(1)
    if "passes" not in df.columns:
        df["passes"] = 1.0
    df["cum_passes"] = df.groupby(["method", "seed"])["passes"].cumsum()
    return df.reset_index(drop=True)


def passes_to_target(df: pd.DataFrame, target_loss: float) -> pd.DataFrame:
    """
    For each (method, seed): data passes spent until loss <= target.
    NaN if never reached.
    """
    rows = []
    for (method, seed), g in df.groupby(["method", "seed"]):
        g = g.sort_values("iter")
        hit = g[g["loss"] <= target_loss]
        rows.append({
            "method": method,
            "seed": seed,
            "target": target_loss,
            "passes_to_target": float(hit["cum_passes"].iloc[0]) if len(hit) else np.nan,
            "iter_to_target": int(hit["iter"].iloc[0]) if len(hit) else np.nan,
        })
    return pd.DataFrame(rows)


def final_metrics(df: pd.DataFrame) -> pd.DataFrame:
    rows = []
    for (method, seed), g in df.groupby(["method", "seed"]):
        g = g.sort_values("iter")
        loss = g["loss"].dropna()
        rows.append({
            "method": method,
            "seed": seed,
            "final_iter": int(g["iter"].max()),
            "final_loss": float(loss.iloc[-1]) if len(loss) else np.nan,
            "total_passes": float(g["cum_passes"].iloc[-1]),
        })
    return pd.DataFrame(rows)


def clamp_pos(x: np.ndarray, floor: float) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    x = np.where(np.isfinite(x), x, np.nan)
    return np.where(x > floor, x, floor)


# ---------------------------
# Plotting
# ---------------------------

def plot_per_seed_lines(ax, df: pd.DataFrame, x_col: str, y_col: str, title: str, y_label: str, logy: bool = False):
    for method in sorted(df["method"].unique()):
        df_m = df[df["method"] == method]
        first = True
        for _, g in df_m.groupby("seed"):
            g = g.sort_values(x_col)
            ax.plot(
                g[x_col], g[y_col],
                alpha=0.35 if df_m["seed"].nunique() > 1 else 1.0,
                label=METHOD_LABELS.get(method, method) if first else None,
            )
            first = False
    ax.set_xlabel(x_col.replace("_", " ").title())
    ax.set_ylabel(y_label)
    ax.set_title(title)
    if logy:
        ax.set_yscale("log")
    ax.legend()


def make_plots(df: pd.DataFrame, outdir: str, title_prefix: str, targets: List[float]) -> List[str]:
    os.makedirs(outdir, exist_ok=True)
    df = clean_runs(df)
    df["loss_log"] = clamp_pos(df["loss"].to_numpy(), LOSS_FLOOR)
    written = []

    for x_col, name in [("iter", "loss_vs_iter"), ("cum_passes", "loss_vs_passes")]:
        fig, ax = plt.subplots()
        plot_per_seed_lines(ax, df, x_col, "loss_log", f"{title_prefix}: Loss", "Loss (log scale)", logy=True)
        fig.tight_layout()
        path = os.path.join(outdir, f"{name}.png")
        fig.savefig(path, dpi=150)
        plt.close(fig)
        written.append(path)

    if df["distance"].notna().any():
        df["distance_log"] = clamp_pos(df["distance"].to_numpy(), LOSS_FLOOR)
        fig, ax = plt.subplots()
        plot_per_seed_lines(ax, df.dropna(subset=["distance"]), "iter", "distance_log",
                            f"{title_prefix}: Relative loss change", "Distance (log scale)", logy=True)
        fig.tight_layout()
        path = os.path.join(outdir, "distance_vs_iter.png")
        fig.savefig(path, dpi=150)
        plt.close(fig)
        written.append(path)

    final_metrics(df).to_csv(os.path.join(outdir, "final_metrics.csv"), index=False)
    if targets:
        table = pd.concat([passes_to_target(df, t) for t in targets], ignore_index=True)
        table.to_csv(os.path.join(outdir, "passes_to_target.csv"), index=False)
    return written


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--objective", required=True, choices=["svm", "logistic", "ridge", "lasso", "cox"])
    ap.add_argument("--dataset", required=True, choices=["separable", "binary", "linear", "survival"])
    ap.add_argument("--m", type=int, required=True)
    ap.add_argument("--d", type=int, required=True)
    ap.add_argument("--seeds", type=str, default="0")
    ap.add_argument("--methods", type=str, default="igd,cg,newton")
    ap.add_argument("--outdir", type=str, default="figures")
    ap.add_argument("--targets", type=str, default="",
                    help="Comma-separated loss targets for passes-to-target tables.")
    args = ap.parse_args()

    seeds = [int(s.strip()) for s in args.seeds.split(",") if s.strip()]
    methods = [m.strip() for m in args.methods.split(",") if m.strip()]
    targets = [float(t.strip()) for t in args.targets.split(",") if t.strip()]

    df = load_runs(args.objective, args.dataset, args.m, args.d, seeds, methods)
    outdir = os.path.join(args.outdir, f"{args.objective}_{args.dataset}_m{args.m}_d{args.d}")
    make_plots(df, outdir, f"{args.objective} / {args.dataset}", targets)
    print("Wrote plots to:", outdir)


if __name__ == "__main__":
    main()
