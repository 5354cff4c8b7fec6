#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import json
import os
from typing import Dict

from als_cg_gpu import (
    CSRMatrix,
    CuALS,
    init_factors,
    read_triplets,
    train_als,
)


def save_json(path: str, obj: dict):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)


def build_option(args) -> Dict:
    opt: Dict = {}
    if args.option:
        with open(args.option, "r", encoding="utf-8") as f:
            opt.update(json.load(f))
    # command line wins over the option file
    for key in ("d", "alpha", "reg_u", "reg_i", "num_iters", "num_cg_max_iters",
                "cg_tolerance", "batch_mb", "device", "seed"):
        val = getattr(args, key)
        if val is not None:
            opt[key] = val
    if args.adaptive_reg:
        opt["adaptive_reg"] = True
    if args.no_loss:
        opt["compute_loss_on_training"] = False
    return opt


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--data", type=str, nargs="+", required=True, help="u_idx \\t i_idx \\t value files")
    ap.add_argument("--meta", type=str, default=None, help="meta.json with n_users/n_items (default: next to --data)")
    ap.add_argument("--option", type=str, default=None, help="JSON option file")
    ap.add_argument("--out", type=str, default=None, help="where to write the loss history")

    ap.add_argument("--d", type=int, default=None)
    ap.add_argument("--alpha", type=float, default=None)
    ap.add_argument("--reg_u", type=float, default=None)
    ap.add_argument("--reg_i", type=float, default=None)
    ap.add_argument("--num_iters", type=int, default=None)
    ap.add_argument("--num_cg_max_iters", type=int, default=None)
    ap.add_argument("--cg_tolerance", type=float, default=None)
    ap.add_argument("--batch_mb", type=float, default=None)
    ap.add_argument("--device", type=str, default=None)
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--adaptive_reg", action="store_true")
    ap.add_argument("--no_loss", action="store_true")
    args = ap.parse_args()

    meta_path = args.meta or os.path.join(os.path.dirname(os.path.abspath(args.data[0])), "meta.json")
    with open(meta_path, "r", encoding="utf-8") as f:
        meta = json.load(f)
    n_users, n_items = int(meta["n_users"]), int(meta["n_items"])

    solver = CuALS()
    if not solver.init(build_option(args)):
        raise SystemExit(1)
    opt = solver.opt

    users, items, vals = read_triplets(args.data)
    user_items = CSRMatrix.from_triplets(users, items, vals, n_users, n_items)
    item_users = user_items.transpose()
    print(f"users={n_users}, items={n_items}, nnz={vals.shape[0]}, device={solver.device}")

    vdim = solver.get_latent_dim()
    P = init_factors(n_users, opt.d, vdim, opt.seed)
    Q = init_factors(n_items, opt.d, vdim, opt.seed + 1)
    solver.initialize_model(P, n_users, Q, n_items)

    hist = train_als(solver, user_items, item_users)
    solver.release()

    out = {
        "meta": {
            "data": args.data,
            "n_users": n_users,
            "n_items": n_items,
            "nnz": int(vals.shape[0]),
            "device": str(solver.device),
            "params": vars(opt),
        },
        "train_loss": hist.train_loss,
    }
    save_path = args.out or os.path.join(os.path.dirname(meta_path), "als_history.json")
    save_json(save_path, out)
    print(f"\nSaved: {save_path}")


if __name__ == "__main__":
    main()
