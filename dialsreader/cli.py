"""
Command-line interface for the DIALS data reader.

Provides utilities to inspect experiment lists and reflection tables.
"""

import argparse
import sys
import warnings

import numpy as np

from .config import ReaderConfig
from .errors import DialsReaderError
from .experiment_list import ExperimentList
from .reflection_table import ReflectionTable, valid_miller_indices


def _format_vector(v) -> str:
    return "(" + ", ".join(f"{x:.3f}" for x in v) + ")"


def info_command(filename: str, separator: str = "/"):
    """Print summary information about an experiment list"""
    print(f"Analyzing experiment list: {filename}")
    print("=" * 50)

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            experiments = ExperimentList.load(filename, ReaderConfig(path_separator=separator))

        labels = experiments.experiment_labels()
        print(f"Experiments: {experiments.num_experiments}")
        print()

        for label, expt in zip(labels, experiments):
            print(f"Experiment {expt.experiment_id}: {label}")
            print(f"  Panels: {expt.num_panels}")
            if expt.beam is not None:
                print(f"  Beam: {expt.beam.summary()}")
            if expt.crystal_summary is not None:
                print(f"  Crystal: {expt.crystal_summary}")
            if expt.goniometer is not None:
                print(f"  Rotation axis: {_format_vector(expt.goniometer.rotation_axis)}")
            if expt.scan is not None:
                print(f"  Scan: {expt.scan.num_images} images, "
                      f"start {np.degrees(expt.scan.oscillation_start):.3f}°, "
                      f"step {np.degrees(expt.scan.oscillation_step):.3f}°")
            print()

        if experiments.failures:
            print("Failed experiments:")
            for expt_id, error in experiments.failures.items():
                print(f"  {expt_id}: {error}")
            print()

        for warning in caught:
            print(f"Warning: {warning.message}")

    except (OSError, DialsReaderError) as e:
        print(f"Error analyzing file: {e}")
        return 1

    return 0


def panels_command(filename: str, experiment_id: int = 0):
    """Show lab-frame geometry for every panel of one experiment"""
    try:
        experiments = ExperimentList.load(filename)
        expt = experiments[experiment_id]
    except (OSError, DialsReaderError, KeyError) as e:
        print(f"Error reading panels: {e}")
        return 1

    print(f"Experiment {experiment_id}: {expt.num_panels} panels")
    for panel in expt.panels:
        print(f"\nPanel {panel.index} ({panel.name}):")
        print(f"  Image size: {int(panel.image_size[0])} x {int(panel.image_size[1])} px")
        print(f"  Panel size: {panel.panel_size[0]:.3f} x {panel.panel_size[1]:.3f} mm")
        print(f"  Origin: {_format_vector(panel.origin)}")
        print(f"  Centroid: {_format_vector(panel.centroid)}")
        print(f"  Normal: {_format_vector(panel.normal)}")
    return 0


def crystal_command(filename: str):
    """Print U, B and UB matrices of every experiment with a crystal"""
    try:
        experiments = ExperimentList.load(filename)
    except (OSError, DialsReaderError) as e:
        print(f"Error reading crystals: {e}")
        return 1

    found = 0
    with np.printoptions(precision=6, suppress=True):
        for expt in experiments:
            if expt.crystal is None:
                continue
            found += 1
            print(f"Experiment {expt.experiment_id}: {expt.crystal_summary}")
            print(f"  U:\n{expt.crystal.U}")
            print(f"  B:\n{expt.crystal.B}")
            print(f"  UB:\n{expt.crystal.UB}")
            print()

    if not found:
        print("No crystals found")
    return 0


def refl_command(filename: str, show_columns: bool = False):
    """Print summary information about a reflection table"""
    print(f"Analyzing reflection table: {filename}")
    print("=" * 50)

    try:
        table = ReflectionTable.load(filename)
        print(f"Reflections: {table.num_rows:,}")
        print(f"Columns: {len(table.column_names)}")

        if show_columns:
            for name in sorted(table.column_names):
                print(f"  {name}: {table.type_tag(name)}")
        print()

        counts = table.flag_counts()
        if counts is not None:
            print("Flags:")
            for name, count in counts.items():
                print(f"  {name}: {count}")
            print()

        millers = table.get_miller_indices()
        if millers is not None:
            print(f"Indexed (nonzero Miller index): {int(np.sum(valid_miller_indices(millers)))}")

        ids = table.get_experiment_ids()
        if ids is not None:
            values, counts = np.unique(ids, return_counts=True)
            print("Reflections per experiment:")
            for expt_id, count in zip(values, counts):
                print(f"  {expt_id}: {count}")

    except (OSError, DialsReaderError) as e:
        print(f"Error analyzing file: {e}")
        return 1

    return 0


def main(argv=None):
    """Main command-line interface"""
    parser = argparse.ArgumentParser(
        description="DIALS Reader - decode DIALS experiment lists and reflection tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dialsreader info indexed.expt               # Show experiment summary
  dialsreader panels indexed.expt -e 0        # Panel geometry of experiment 0
  dialsreader crystal indexed.expt            # Orientation matrices
  dialsreader refl indexed.refl --columns     # Reflection table summary
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    info_parser = subparsers.add_parser('info', help='Show experiment list information')
    info_parser.add_argument('filename', help='.expt file to analyze')
    info_parser.add_argument('--separator', default='/',
                             help='Path separator used for experiment labels (default: /)')

    panels_parser = subparsers.add_parser('panels', help='Show detector panel geometry')
    panels_parser.add_argument('filename', help='.expt file')
    panels_parser.add_argument('--experiment', '-e', type=int, default=0,
                               help='Experiment id (default: 0)')

    crystal_parser = subparsers.add_parser('crystal', help='Show crystal orientation matrices')
    crystal_parser.add_argument('filename', help='.expt file')

    refl_parser = subparsers.add_parser('refl', help='Show reflection table information')
    refl_parser.add_argument('filename', help='.refl file to analyze')
    refl_parser.add_argument('--columns', action='store_true',
                             help='List column names and types')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'info':
        return info_command(args.filename, args.separator)

    elif args.command == 'panels':
        return panels_command(args.filename, args.experiment)

    elif args.command == 'crystal':
        return crystal_command(args.filename)

    elif args.command == 'refl':
        return refl_command(args.filename, args.columns)

    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
