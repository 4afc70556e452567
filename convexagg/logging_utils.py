from __future__ import annotations
import os
import sys
import time
from typing import Optional

import pandas as pd
import torch
from loguru import logger


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Route loguru to stderr (and a dated file under log_dir, if given)."""
    logger.remove()
    logger.add(sys.stderr, level=level, format="{time:HH:mm:ss} | {level} | {message}")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            f"{log_dir}/{{time:YYYY-MM-DD}}.log",
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            enqueue=True,
        )


class CSVLogger:
    """One row per finalized pass; written out on close()."""

    def __init__(self, out_csv: Optional[str] = None):
        self.out_csv = out_csv
        self.rows = []
        self.t0 = time.time()
        if out_csv and os.path.dirname(out_csv):
            os.makedirs(os.path.dirname(out_csv), exist_ok=True)

    def log(self, k: int, loss, grad_norm=None, alpha=None, phase: str = "main", **extras):
        def coerce(v):
            if isinstance(v, torch.Tensor):
                if v.numel() == 1:
                    return float(v)
                return float(torch.linalg.norm(v))
            if v is None:
                return None
            if isinstance(v, (int, float, str, bool)):
                return v
            try:
                return float(v)
            except (TypeError, ValueError):
                return str(v)

        row = {
            "iter": int(k),
            "phase": phase,
            "loss": float(loss),
            "grad_norm": coerce(grad_norm),
            "alpha": None if alpha is None else float(alpha),
            "elapsed_sec": time.time() - self.t0,
        }
        row.update({kk: coerce(vv) for kk, vv in extras.items()})
        self.rows.append(row)

    def frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows)

    def close(self) -> pd.DataFrame:
        df = self.frame()
        if self.out_csv:
            df.to_csv(self.out_csv, index=False)
            logger.info(f"history written to {self.out_csv}")
        return df
