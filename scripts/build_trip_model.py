#!/usr/bin/env python3
"""
Build trip model files from historical taxi pickups.

Usage:
  python scripts/build_trip_model.py --graphml data/manhattan.graphml \
      --pickups datasets/yellow_tripdata_2016-01.csv datasets/yellow_tripdata_2016-02.csv
  python scripts/build_trip_model.py --graphml data/manhattan.graphml --download --per-month

Writes the default aggregate model (data.bin) and, with --per-month, one
model per calendar month (data_01.bin ... data_12.bin) into the data dir.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd

# Ensure project root is importable when running from `scripts/`
sys.path.insert(0, str(Path(__file__).parent.parent))

from tripmodel.config import TripModelConfig
from tripmodel.data import (
    DEFAULT_TRAINING_MONTHS,
    TLC_URL_TEMPLATE,
    download_trip_records,
    get_pickup_stats,
    load_pickups,
)
from tripmodel.generation import TripGenerator
from tripmodel.network import RoadNetwork
from tripmodel.storage import write_model


def main() -> int:
    parser = argparse.ArgumentParser(description="Build trip sampling models from historical pickups.")
    parser.add_argument("--graphml", type=str, required=True, help="OSMnx GraphML road network (EPSG:4326)")
    parser.add_argument("--pickups", type=str, nargs="*", default=[], help="TLC trip record CSV files")
    parser.add_argument("--download", action="store_true", help="Download the default training months")
    parser.add_argument("--datasets-dir", type=str, default="datasets")
    parser.add_argument(
        "--url-template",
        type=str,
        default=TLC_URL_TEMPLATE,
        help="Download URL with {year} and {month} fields (the default bucket is retired, use a mirror)",
    )
    parser.add_argument("--config", type=str, default="", help="JSON file with TripModelConfig overrides")
    parser.add_argument("--data-dir", type=str, default="", help="Output directory (overrides config)")
    parser.add_argument("--per-month", action="store_true", help="Also build one model per calendar month")
    parser.add_argument("--bbox", type=float, nargs=4, metavar=("WEST", "SOUTH", "EAST", "NORTH"))
    parser.add_argument("--quiet", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    config = TripModelConfig.from_json(args.config) if args.config else TripModelConfig()
    if args.data_dir:
        config.data_dir = args.data_dir

    csv_paths = [Path(p) for p in args.pickups]
    if args.download:
        csv_paths += [
            download_trip_records(year, month, dest_dir=args.datasets_dir, url_template=args.url_template)
            for year, month in DEFAULT_TRAINING_MONTHS
        ]
    if not csv_paths:
        parser.error("no pickup files given (use --pickups or --download)")

    print(f"Loading road network from {args.graphml}...")
    network = RoadNetwork.from_graphml(args.graphml, path_cache_size=config.path_cache_size)

    pickups = load_pickups(csv_paths, tz=config.timezone, bbox=tuple(args.bbox) if args.bbox else None)
    print(f"Pickups: {json.dumps(get_pickup_stats(pickups), indent=2, default=str)}")

    generator = TripGenerator(network, config, show_progress=not args.quiet)
    data = generator.generate(pickups)
    out = write_model(config.data_path(), data)
    print(f"\nWrote {len(data.trips)} trips to {out}")

    stats = generator.trip_duration_stats()
    print(f"  Average trip duration: {stats['avg_duration_min']:.2f} min")
    print(f"  Min / max: {stats['min_duration_min']:.2f} / {stats['max_duration_min']:.2f} min")

    if args.per_month:
        months = pd.to_datetime(pickups["time"], unit="s", utc=True).dt.tz_convert(config.timezone).dt.month
        for month in sorted(months.unique()):
            subset = pickups[months == month]
            month_generator = TripGenerator(network, config, show_progress=not args.quiet)
            month_data = month_generator.generate(subset)
            out = write_model(config.data_path(int(month)), month_data)
            print(f"Wrote month {month:02d}: {len(month_data.trips)} trips, {len(subset)} pickups -> {out}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
