# -*- coding: utf-8 -*-

"""
TractSelect - Headless Selection Runner
"""

import os
import sys
import logging
import argparse
from typing import Optional, Sequence

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def _fail(message: str) -> None:
    """Logs and prints an error, then exits with status 1."""
    logger.error(f"Error: {message}")
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TractSelect - select streamlines by their endpoints"
    )
    parser.add_argument("tractogram", help="Path to the tractogram (.trk, .tck, .trx)")

    region = parser.add_mutually_exclusive_group(required=True)
    region.add_argument(
        "--box",
        nargs=6,
        type=float,
        metavar=("X0", "Y0", "Z0", "X1", "Y1", "Z1"),
        help="Select with the axis-aligned box spanned by two world-space corners.",
    )
    region.add_argument(
        "--parcellation",
        metavar="FILE",
        help="Parcellation volume (.nii, .nii.gz) whose labels are used as selection meshes.",
    )
    parser.add_argument(
        "--label",
        type=int,
        action="append",
        dest="labels",
        help="Parcellation label to select with. Can be used multiple times; "
        "labels are applied one after another.",
    )
    parser.add_argument(
        "--voxel",
        action="store_true",
        help="Interpret the --box corners as voxel coordinates of the tractogram.",
    )
    parser.add_argument("--lut", help="FreeSurfer color LUT for region names.")
    parser.add_argument(
        "--exclude",
        action="store_true",
        help="Keep the streamlines with no endpoint inside the region(s).",
    )
    parser.add_argument(
        "--max-streamlines",
        type=int,
        default=None,
        dest="max_streamlines",
        help="Maximum number of selected streamlines to build display curves for.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads for mesh classification.",
    )
    parser.add_argument(
        "--output",
        metavar="FILE",
        help="Save the selected streamlines (.trk or .tck).",
    )
    return parser


def _run_selection(args: argparse.Namespace) -> None:
    """
    Loads the inputs, runs the selection and reports/saves the result.

    Raises:
        SystemExit: If inputs are invalid or the selection fails.
    """
    from tractselect_pkg.file_io import SAVABLE_EXTENSIONS, load_tractogram, save_streamlines
    from tractselect_pkg.geometry.regions import BoxRegion
    from tractselect_pkg.logic.selection import StreamlineSelector
    from tractselect_pkg.logic.tractogram_tools import TractogramSession
    from tractselect_pkg.parcellation import load_parcellation, region_meshes
    from tractselect_pkg.utils import DEFAULT_MAX_STREAMLINES, DEFAULT_WORKER_COUNT

    if args.parcellation and not args.labels:
        _fail("--parcellation requires at least one --label.")
    if args.output:
        output_ext = os.path.splitext(args.output)[1].lower()
        if output_ext not in SAVABLE_EXTENSIONS:
            _fail(
                f"Unsupported output format: {output_ext} "
                f"(supported: {', '.join(SAVABLE_EXTENSIONS)})"
            )

    inclusion = not args.exclude
    max_streamlines = (
        DEFAULT_MAX_STREAMLINES if args.max_streamlines is None else args.max_streamlines
    )
    workers = DEFAULT_WORKER_COUNT if args.workers is None else args.workers

    try:
        data = load_tractogram(args.tractogram)
        print(f"Loaded {len(data)} streamlines.")

        session = TractogramSession.from_tractogram_data(
            data,
            max_streamline_count=max_streamlines,
            selector=StreamlineSelector(max_workers=workers),
        )

        if args.box:
            if args.voxel:
                box = session.voxel_box(args.box[:3], args.box[3:])
            else:
                box = BoxRegion.from_corners(args.box[:3], args.box[3:])
            result = session.select_box(box, inclusion)
            shown = min(len(result), max_streamlines)
            curves = session.builder.build_curves(
                result.streamlines[:shown],
                source_indices=[int(i) for i in result.indices[:shown]],
            )
        else:
            parcellation = load_parcellation(args.parcellation, args.lut)
            regions = region_meshes(parcellation, args.labels)
            print(f"Regions: {', '.join(r.name for r in regions)}")
            result, curves = session.select_meshes(regions, inclusion)

        mode = "inclusion" if inclusion else "exclusion"
        print(f"Selected {len(result)} of {len(data)} streamlines ({mode}).")
        if result.low_confidence:
            print("Warning: a selection mesh is not watertight; results may be inexact.")
        if curves:
            print(
                f"Curves built: {len(curves)}, "
                f"max length: {max(c.length for c in curves):.2f}, "
                f"max average curvature: {max(c.average_curvature for c in curves):.4f}"
            )

        if args.output:
            save_streamlines(
                result, args.output, header=data.header, reference_affine=data.affine
            )
            print(f"Successfully saved: {args.output}")

    except Exception as e:
        logger.error(f"Selection failed: {e}", exc_info=True)
        print(f"Error: Selection failed: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Main function of the TractSelect command line runner.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    _run_selection(args)
    logger.info("Selection finished.")


if __name__ == "__main__":
    main()
