#!/usr/bin/env python3
"""
Summarize a trip model file.

Usage:
  python scripts/inspect_trip_model.py --graphml data/manhattan.graphml --model resources/data.bin
  python scripts/inspect_trip_model.py --graphml data/manhattan.graphml --model out/theta_bandit_9.bin --redundancy
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

# Ensure project root is importable when running from `scripts/`
sys.path.insert(0, str(Path(__file__).parent.parent))

from tripmodel.config import TripModelConfig
from tripmodel.generation import coverage_of, minimize_trips
from tripmodel.model import softmax
from tripmodel.network import RoadNetwork
from tripmodel.storage import read_model


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect a trip model file.")
    parser.add_argument("--graphml", type=str, required=True, help="Road network the model was built on")
    parser.add_argument("--model", type=str, required=True, help="Model file (data.bin or theta checkpoint)")
    parser.add_argument("--config", type=str, default="", help="JSON file with TripModelConfig overrides")
    parser.add_argument("--top", type=int, default=5, help="Most likely trips to list per reported bin")
    parser.add_argument("--redundancy", action="store_true", help="Check how many trips are still redundant")
    parser.add_argument("--output", type=str, default="", help="Write the summary as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = TripModelConfig.from_json(args.config) if args.config else TripModelConfig()
    network = RoadNetwork.from_graphml(args.graphml, path_cache_size=config.path_cache_size)
    data = read_model(args.model, network)

    durations = np.array([t.travel_duration() for t in data.trips], dtype=float) / 60.0
    lengths = np.array([len(t) for t in data.trips], dtype=float)

    summary = {
        "model": args.model,
        "n_trips": len(data.trips),
        "n_bins": data.n_bins,
        "bin_size_s": data.bin_size,
        "avg_duration_min": float(durations.mean()) if len(durations) else 0.0,
        "max_duration_min": float(durations.max()) if len(durations) else 0.0,
        "avg_nodes": float(lengths.mean()) if len(lengths) else 0.0,
    }

    # Entropy per bin shows how concentrated the learned distributions are
    entropies = []
    for row in data.theta:
        p = softmax(row)
        entropies.append(float(-(p[p > 0] * np.log(p[p > 0])).sum()))
    summary["mean_entropy"] = float(np.mean(entropies)) if entropies else 0.0

    print(f"\n{'=' * 60}")
    print(f"Trip model: {args.model}")
    print(f"{'=' * 60}")
    print(f"  Trips: {summary['n_trips']}")
    print(f"  Bins: {summary['n_bins']} x {summary['bin_size_s']}s")
    print(f"  Average trip duration: {summary['avg_duration_min']:.2f} min")
    print(f"  Average intersections per trip: {summary['avg_nodes']:.1f}")
    print(f"  Mean entropy per bin: {summary['mean_entropy']:.3f}")

    if data.trips and args.top > 0:
        peak = int(np.argmin(entropies))
        p = softmax(data.theta[peak])
        order = np.argsort(-p)[: args.top]
        print(f"\n  Most concentrated bin {peak}:")
        for idx in order:
            print(f"    trip {data.trips[idx].id}: p={p[idx]:.4f}")

    if args.redundancy:
        removed = minimize_trips(coverage_of(data.trips, network, config))
        summary["redundant_trips"] = len(removed)
        print(f"\n  Redundant trips: {len(removed)}")

    if args.output:
        Path(args.output).parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, "w") as f:
            json.dump(summary, f, indent=2)
        print(f"\nSaved summary to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
