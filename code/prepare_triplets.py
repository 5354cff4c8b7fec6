#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import csv
import json
import os
from typing import Iterator, Tuple


def iter_ratings_ml10m_dat(path: str) -> Iterator[Tuple[int, int, float]]:
    # format: UserID::MovieID::Rating::Timestamp
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        for line in f:
            parts = line.rstrip("\n").split("::")
            if len(parts) < 3:
                continue
            yield int(parts[0]), int(parts[1]), float(parts[2])


def iter_ratings_ml20m_csv(path: str) -> Iterator[Tuple[int, int, float]]:
    # format header: userId,movieId,rating,timestamp
    with open(path, "r", encoding="utf-8", errors="ignore", newline="") as f:
        for row in csv.DictReader(f):
            uid = int(row.get("userId") or row.get("userid") or row.get("UserID"))
            mid = int(row.get("movieId") or row.get("movieid") or row.get("MovieID"))
            r = float(row.get("rating") or row.get("Rating"))
            yield uid, mid, r


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--ratings", type=str, required=True, help="ratings.dat (ml-10m) OR ratings.csv (ml-20m)")
    ap.add_argument("--out_dir", type=str, required=True, help="output dir for triplets.txt and meta.json")
    ap.add_argument("--format", type=str, default="auto", choices=["auto", "ml10m_dat", "ml20m_csv"])
    ap.add_argument("--min_rating", type=float, default=None, help="drop interactions below this value")
    ap.add_argument("--binary", action="store_true", help="write weight 1 instead of the rating")
    args = ap.parse_args()

    fmt = args.format
    if fmt == "auto":
        fmt = "ml20m_csv" if args.ratings.lower().endswith(".csv") else "ml10m_dat"
    it = iter_ratings_ml20m_csv(args.ratings) if fmt == "ml20m_csv" else iter_ratings_ml10m_dat(args.ratings)

    os.makedirs(args.out_dir, exist_ok=True)
    user2idx, item2idx = {}, {}
    n_lines, n_dropped = 0, 0

    with open(os.path.join(args.out_dir, "triplets.txt"), "w", encoding="utf-8") as out:
        for uid, mid, r in it:
            if args.min_rating is not None and r < args.min_rating:
                n_dropped += 1
                continue
            if uid not in user2idx:
                user2idx[uid] = len(user2idx)
            if mid not in item2idx:
                item2idx[mid] = len(item2idx)
            w = 1.0 if args.binary else r
            # u_idx \t i_idx \t weight
            out.write(f"{user2idx[uid]}\t{item2idx[mid]}\t{w}\n")
            n_lines += 1

    meta = {
        "n_users": len(user2idx),
        "n_items": len(item2idx),
        "n_interactions": n_lines,
        "n_dropped": n_dropped,
        "format": fmt,
        "binary": args.binary,
    }
    with open(os.path.join(args.out_dir, "meta.json"), "w", encoding="utf-8") as f:
        json.dump(meta, f, ensure_ascii=False, indent=2)

    print("Done.")
    print(json.dumps(meta, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
