"""Command-line interface for sprocket frame extraction."""

import argparse
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

PROPERTIES_FILENAME = "frames.properties"


def write_error(output_path: str | None, message: str) -> None:
    """Write error message to an error file next to the output."""
    if output_path:
        error_path = output_path + ".err"
        with open(error_path, "w") as f:
            f.write(message)


def frame_filename(index: int, extension: str) -> str:
    return f"f{index:02d}.{extension.lstrip('.')}"


def write_properties(path: str | Path, records: list, average_resolution: float | None) -> None:
    """Write frame metadata as a Java-style properties file.

    Args:
        path: Output file
        records: FrameRecords in frame order
        average_resolution: Mean derived resolution, or None when every
            frame was dropped
    """
    lines = [f"frames.numberofframes={len(records)}"]
    if average_resolution is not None:
        lines.append(f"frames.resolution={average_resolution:.3f}")
    for record in records:
        props = record.to_properties(f"frames.{record.index}")
        lines.extend(f"{key}={value}" for key, value in props.items())
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def add_extract_arguments(parser: argparse.ArgumentParser) -> None:
    """Add frame extraction arguments to a parser."""
    parser.add_argument("input", nargs="+", help="Scanned film strip image file(s)")
    parser.add_argument(
        "-o",
        "--output-dir",
        help="Directory for extracted frames; each image gets a subdirectory named after it "
        "(default: next to the input image)",
    )
    parser.add_argument(
        "-l",
        "--layout",
        choices=["lr", "rl", "tb", "bt"],
        help="Film transport direction: lr (left to right), rl, tb (top to bottom) or bt",
    )
    parser.add_argument(
        "-f",
        "--film-type",
        choices=["super8", "8mm"],
        help="Film format (default: super8)",
    )
    parser.add_argument("--dpi", type=int, help="Scan resolution in dots per inch (default: 3200)")
    parser.add_argument(
        "--reverse",
        action="store_true",
        default=None,
        help="The image is mirrored (scanned through the base)",
    )
    parser.add_argument("--hough-threshold", type=int, help="Minimum votes for a sprocket hole candidate")
    parser.add_argument(
        "--no-interframe-check",
        dest="interframe_check",
        action="store_false",
        default=None,
        help="Don't validate holes against the sprocket hole pitch",
    )
    parser.add_argument(
        "--oversize",
        type=float,
        help="Multiply the output frame size by this factor (default: 1.0)",
    )
    parser.add_argument(
        "--no-rescale",
        dest="rescale",
        action="store_false",
        default=None,
        help="Don't rescale frames to the configured resolution",
    )
    parser.add_argument(
        "--no-rotation-correction",
        dest="correct_rotation",
        action="store_false",
        default=None,
        help="Cut frames aligned to the image axes",
    )
    parser.add_argument(
        "--config",
        help="JSON extraction configuration (inline JSON string or path to .json file). "
        "Command line options override its values.",
    )
    parser.add_argument(
        "--contrast",
        type=float,
        default=0.3,
        help="Fraction of brightest pixels to saturate in the contrast stretch (default: 0.3)",
    )
    parser.add_argument(
        "--no-contrast",
        action="store_true",
        help="Write frames without the contrast stretch",
    )
    parser.add_argument(
        "--ext",
        default="png",
        help="Output image format extension (default: png)",
    )
    parser.add_argument(
        "--debug-dir",
        help="Directory to save debug visualization images",
    )


def parse_config(config_arg: str | None):
    """Parse extraction config from CLI argument.

    Args:
        config_arg: Either inline JSON string or path to .json file

    Returns:
        ExtractionConfig, unvalidated until the command line overrides are
        applied
    """
    from .models import ExtractionConfig

    if not config_arg:
        return ExtractionConfig()

    # Check if it looks like a file path
    config_path = Path(config_arg)
    if config_path.suffix == ".json" and config_path.exists():
        return ExtractionConfig.from_file(config_path, validate=False)

    return ExtractionConfig.from_json(config_arg, validate=False)


def build_config(args: argparse.Namespace):
    """Extraction config from --config with command line overrides applied.

    Raises:
        ConfigurationError: If the result is invalid.
    """
    from .models import ExtractionConfig

    config = parse_config(args.config)
    overrides = {
        "film_layout": args.layout,
        "film_type": args.film_type,
        "resolution_dpi": args.dpi,
        "reverse_image": args.reverse,
        "hough_threshold": args.hough_threshold,
        "allow_interframe_geometry": args.interframe_check,
        "frame_oversize_mult": args.oversize,
        "rescale": args.rescale,
        "correct_rotation": args.correct_rotation,
    }
    data = config.to_dict()
    data.update({key: value for key, value in overrides.items() if value is not None})
    return ExtractionConfig.from_dict(data)


def extract_image(input_path: str, output_dir: Path, config, args: argparse.Namespace) -> None:
    """Extract the frames of one scanned strip into ``output_dir``.

    Raises:
        FrameExtractionError: If the image can't be read or processed.
    """
    import cv2
    import numpy as np

    from .contrast import linear_contrast
    from .detection import extract_frames
    from .exceptions import ImageReadError

    img = cv2.imread(input_path, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise ImageReadError(input_path)

    visualizer = None
    if args.debug_dir:
        from .visualizer import DebugVisualizer

        debug_dir = Path(args.debug_dir)
        if len(args.input) > 1:
            debug_dir = debug_dir / Path(input_path).stem
        visualizer = DebugVisualizer(debug_dir)

    result = extract_frames(img, config, visualizer=visualizer)

    output_dir.mkdir(parents=True, exist_ok=True)
    for frame, record in zip(result.frames, result.records):
        if frame is None:
            logger.warning("%s: frame %d runs past the image, dropped", input_path, record.index)
            continue
        if not args.no_contrast:
            if frame.dtype in (np.uint8, np.uint16):
                frame = linear_contrast(frame, 0.0, args.contrast)
            else:
                logger.warning("%s: no contrast stretch for %s samples", input_path, frame.dtype)
        record.filename = frame_filename(record.index, args.ext)
        if not cv2.imwrite(str(output_dir / record.filename), frame):
            logger.error("%s: could not write %s", input_path, output_dir / record.filename)
            record.filename = None
            record.dropped = True

    write_properties(output_dir / PROPERTIES_FILENAME, result.records, result.average_resolution)
    logger.info(
        "%s: wrote %d of %d frames to %s",
        input_path,
        result.frame_count - result.dropped_count,
        result.frame_count,
        output_dir,
    )


def run_extract(args: argparse.Namespace) -> None:
    """Extract frames from one or more scanned strips."""
    from .exceptions import ConfigurationError, FrameExtractionError

    try:
        config = build_config(args)
    except (ConfigurationError, OSError) as e:
        msg = getattr(e, "user_message", str(e))
        sys.exit(msg)

    failed = []
    for input_path in args.input:
        stem = Path(input_path).stem
        base_dir = Path(args.output_dir) if args.output_dir else Path(input_path).parent
        output_dir = base_dir / stem
        error_output = str(base_dir / stem)
        base_dir.mkdir(parents=True, exist_ok=True)
        try:
            extract_image(input_path, output_dir, config, args)
        except FrameExtractionError as e:
            logger.error("%s: %s", input_path, e)
            write_error(error_output, e.user_message)
            failed.append((input_path, e.user_message))
        except Exception as e:
            logger.exception("%s: unexpected error", input_path)
            msg = f"Unexpected error: {e}"
            write_error(error_output, msg)
            failed.append((input_path, msg))

    if len(failed) == 1 and len(args.input) == 1:
        sys.exit(failed[0][1])
    if failed:
        sys.exit(f"{len(failed)} of {len(args.input)} images failed")


def run_config(args: argparse.Namespace) -> None:
    """Print the default extraction configuration."""
    from .models import ExtractionConfig

    print(ExtractionConfig.default_json())


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Sprocket hole detection and frame extraction for scanned 8mm film",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sprocket-frames extract strip.tif -l lr               Extract Super 8 frames
  sprocket-frames extract strip.tif -l tb -f 8mm --dpi 2400
  sprocket-frames extract *.tif -l lr -o frames/        One subdirectory per strip
  sprocket-frames config > config.json                  Print the default config
""",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")

    extract_parser = subparsers.add_parser(
        "extract",
        help="Extract frames from scanned film strips",
    )
    add_extract_arguments(extract_parser)
    extract_parser.set_defaults(func=run_extract)

    config_parser = subparsers.add_parser(
        "config",
        help="Print the default extraction configuration as JSON",
    )
    config_parser.set_defaults(func=run_config)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
