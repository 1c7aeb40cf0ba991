# src/scripts/plot_grid.py
import argparse
import os
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from noisemap import utils
from noisemap.compute import energetic_sum


def format_title(meta, num_receivers=None):
    """
    Format a title string with the grid statistics from metadata.
    """
    if not meta:
        return None
    grid_dim = meta.get("grid_dim", "?")
    level = meta.get("subdivision_level", "?")
    parts = [f"Grid={grid_dim}x{grid_dim}", f"level={level}"]
    if num_receivers is not None:
        parts.append(f"receivers={num_receivers}")
    failures = meta.get("failures") or []
    if failures:
        parts.append(f"failed cells={len(failures)}")
    elapsed = meta.get("elapsed_seconds")
    if elapsed is not None:
        parts.append(f"{elapsed:.1f}s")
    return " | ".join(parts)


def global_levels(levels):
    """Energetic sum over bands for every receiver row."""
    levels = np.asarray(levels, dtype=np.float64)
    if levels.ndim != 2 or levels.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    return energetic_sum(levels.T)


def draw_grid(ax, meta):
    """Draw the cell boundaries of the computation grid."""
    area = meta.get("area")
    grid_dim = meta.get("grid_dim")
    if not area or not grid_dim:
        return
    min_x, min_y, max_x, max_y = area
    for x in np.linspace(min_x, max_x, grid_dim + 1):
        ax.plot([x, x], [min_y, max_y], color="0.6", lw=0.6, zorder=1)
    for y in np.linspace(min_y, max_y, grid_dim + 1):
        ax.plot([min_x, max_x], [y, y], color="0.6", lw=0.6, zorder=1)


def render(result, title=None, output=None, cmap="viridis", dpi=200, show=False):
    coordinates = result.coordinates
    if coordinates is None or len(coordinates) == 0:
        print("No receivers to render")
        return

    coordinates = np.asarray(coordinates, dtype=np.float64)
    levels = global_levels(result.levels)
    valid = np.isfinite(coordinates[:, 0]) & np.isfinite(coordinates[:, 1])
    audible = valid & np.isfinite(levels)

    fig, ax = plt.subplots(figsize=(7, 6))
    draw_grid(ax, result.meta or {})

    # Receivers with no contribution at all
    silent = valid & ~audible
    if np.any(silent):
        ax.scatter(coordinates[silent, 0], coordinates[silent, 1], s=6, c="lightgrey", zorder=2)
    if np.any(audible):
        sc = ax.scatter(
            coordinates[audible, 0],
            coordinates[audible, 1],
            c=levels[audible],
            s=10,
            cmap=cmap,
            zorder=3,
        )
        fig.colorbar(sc, ax=ax, label="Level (dB)")

    ax.set_aspect("equal")
    ax.set_xlabel("x (m)")
    ax.set_ylabel("y (m)")
    if title:
        ax.set_title(title, pad=10)

    if output:
        os.makedirs(os.path.dirname(output) if os.path.dirname(output) else ".", exist_ok=True)
        plt.savefig(output, dpi=dpi, bbox_inches="tight", pad_inches=0.1)
        print(f"Saved figure to {output}")
    if show:
        plt.show()
    plt.close(fig)


def main():
    parser = argparse.ArgumentParser(description="Plot receiver levels of a saved noise map .npz")
    parser.add_argument("file", help="Path to .npz result file")
    parser.add_argument("--out", default=None, help="Output image path (PNG, derived from input if not provided)")
    parser.add_argument("--cmap", default="viridis", help="Matplotlib colormap (default: viridis)")
    parser.add_argument("--dpi", type=int, default=200, help="DPI for output file (default: 200)")
    parser.add_argument("--show", action="store_true", help="Show plot interactively")
    args = parser.parse_args()

    if not os.path.exists(args.file):
        print(f"Error: file not found: {args.file}")
        return

    if args.out is None:
        input_path = Path(args.file)
        args.out = str(input_path.parent / f"{input_path.stem}_map.png")

    result = utils.load_result(args.file)
    title = format_title(result.meta or {}, num_receivers=len(result.receiver_ids))
    render(result, title=title, output=args.out, cmap=args.cmap, dpi=args.dpi, show=args.show)


if __name__ == "__main__":
    main()
