#!/usr/bin/env python3
"""
Noise Map Runner

Splits the receivers area of a sqlite spatial store into computation cells and
evaluates them in parallel. Writes the merged receiver levels to an .npz file
and a JSON manifest next to it.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from noisemap import ConfigurationError, NoiseMapConfig, PathData, compute_noise_map, load_config, utils
from noisemap.logging_config import setup_logging


def build_config(args) -> tuple:
    """Configuration file first, command line table names on top of it."""
    if args.config:
        config, path_data = load_config(args.config)
    else:
        if not (args.buildings and args.sources and args.receivers):
            raise ConfigurationError(
                "--buildings, --sources and --receivers are required without --config"
            )
        config, path_data = NoiseMapConfig(args.buildings, args.sources, args.receivers), PathData()
    overrides = {
        "buildings_table": args.buildings,
        "sources_table": args.sources,
        "receivers_table": args.receivers,
        "soil_table": args.soil,
        "dem_table": args.dem,
        "parallel_computation_count": args.jobs,
        "maximum_propagation_distance": args.max_distance,
    }
    config = config.with_changes(**{k: v for k, v in overrides.items() if v is not None})
    config.validate()
    return config, path_data


def main():
    parser = argparse.ArgumentParser(
        description="Compute noise levels at receivers, cell by cell",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("database", type=str, help="Path of the sqlite spatial store")
    parser.add_argument("--config", type=str, default=None, help="JSON or TOML configuration file")
    parser.add_argument("--buildings", type=str, default=None, help="Buildings table")
    parser.add_argument("--sources", type=str, default=None, help="Sound sources table")
    parser.add_argument("--receivers", type=str, default=None, help="Receivers table")
    parser.add_argument("--soil", type=str, default=None, help="Ground absorption table")
    parser.add_argument("--dem", type=str, default=None, help="Elevation points table")
    parser.add_argument(
        "--max-distance",
        type=float,
        default=None,
        help="Maximum propagation distance in meters (default: 750)",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=None,
        help="Number of parallel processes, 0 for every core (default: 0)",
    )
    parser.add_argument(
        "--name",
        type=str,
        default="noisemap",
        help="Run name for output folder (default: 'noisemap')",
    )
    parser.add_argument(
        "--out-dir",
        type=str,
        default="results/noisemaps",
        help="Parent directory of the run folder (default: results/noisemaps)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level name (default: INFO)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging, same as --log-level DEBUG")

    args = parser.parse_args()
    setup_logging(logging.DEBUG if args.verbose else args.log_level, args.log_file)

    try:
        config, path_data = build_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 2

    timestamp = utils.now_str()
    run_dir = Path(args.out_dir) / f"{args.name}_{timestamp}"
    run_dir.mkdir(parents=True, exist_ok=True)

    manifest = {
        "database": str(Path(args.database).resolve()),
        "config": {k: v for k, v in vars(config).items()},
        "path_data": {k: v for k, v in vars(path_data).items()},
        "timestamp": timestamp,
        "run_name": args.name,
    }
    manifest_path = run_dir / "manifest.json"

    print("Noise map computation started:")
    print(f"  Database: {args.database}")
    print(f"  Receivers table: {config.receivers_table}")
    print(f"  Maximum propagation distance: {config.maximum_propagation_distance} m")
    print(f"  Parallel jobs: {config.worker_count}")
    print(f"  Output directory: {run_dir}")
    print()

    start_time = time.time()
    result = compute_noise_map(args.database, config, path_data)
    elapsed_time = time.time() - start_time

    output_path = run_dir / "levels.npz"
    utils.save_result(output_path, result)

    meta = result.meta or {}
    failures = meta.get("failures", [])
    manifest["results"] = {
        "receivers": int(result.receiver_ids.shape[0]),
        "grid_dim": meta.get("grid_dim"),
        "failed_cells": len(failures),
        "elapsed_seconds": elapsed_time,
        "output": str(output_path),
    }
    if failures:
        manifest["failures"] = failures
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    grid_dim = meta.get("grid_dim", 0)
    print()
    print("=" * 60)
    print("Noise map completed!")
    print(f"  Grid: {grid_dim}x{grid_dim} cells")
    print(f"  Receivers: {result.receiver_ids.shape[0]}")
    print(f"  Failed cells: {len(failures)}")
    print(f"  Total time: {elapsed_time:.2f} seconds")
    print(f"  Levels: {output_path}")
    print(f"  Manifest: {manifest_path}")
    print("=" * 60)

    return 0 if not failures else 1


if __name__ == "__main__":
    sys.exit(main())
