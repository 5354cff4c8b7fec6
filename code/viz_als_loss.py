#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import json
import os
import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.ticker import AutoMinorLocator, MaxNLocator


def set_style():
    plt.rcParams.update({
        "figure.dpi": 120,
        "savefig.dpi": 300,
        "font.size": 11,
        "axes.titlesize": 12,
        "axes.labelsize": 11,
        "legend.fontsize": 10,
        "xtick.labelsize": 10,
        "ytick.labelsize": 10,
        "axes.grid": True,
        "grid.alpha": 0.25,
        "grid.linestyle": "--",
        "axes.spines.top": False,
        "axes.spines.right": False,
    })


def load_curves(paths):
    """Read train_loss curves from one or more als_history.json files."""
    curves = {}
    for p in paths:
        with open(p, "r", encoding="utf-8") as f:
            obj = json.load(f)
        curve = obj.get("train_loss", [])
        if not curve:
            print(f"Warning: {p} has no train_loss (trained with loss disabled?)")
            continue
        label = os.path.splitext(os.path.basename(p))[0]
        curves[label] = np.array(curve, dtype=np.float64)
    return curves


def plot_curves(curves, out_path, log_y=False):
    fig = plt.figure(figsize=(8.0, 4.2))
    ax = fig.add_subplot(111)

    for label, y in sorted(curves.items()):
        x = np.arange(1, y.size + 1)
        ax.plot(x, y, marker="o", linewidth=1.5, label=label)

    ax.set_xlabel("Epoch")
    ax.set_ylabel("Training loss (numerator / denominator)")
    ax.set_title("Implicit ALS (CG) training loss")
    if log_y:
        ax.set_yscale("log")
    ax.xaxis.set_major_locator(MaxNLocator(integer=True))
    ax.yaxis.set_minor_locator(AutoMinorLocator())
    ax.grid(True, which="both", linestyle="--", alpha=0.25)
    ax.legend(frameon=False)

    fig.tight_layout()
    fig.savefig(out_path, bbox_inches="tight")
    plt.close(fig)
    print("Saved:", out_path)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--history", type=str, nargs="+", required=True)
    ap.add_argument("--out", type=str, default=None)
    ap.add_argument("--log_y", action="store_true")
    args = ap.parse_args()

    set_style()
    curves = load_curves(args.history)
    if not curves:
        raise FileNotFoundError("No train_loss curves found in the given histories.")

    out_path = args.out or os.path.join(os.path.dirname(os.path.abspath(args.history[0])), "als_train_loss.png")
    plot_curves(curves, out_path, log_y=args.log_y)


if __name__ == "__main__":
    main()
