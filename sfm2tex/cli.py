"""
Command-line interface for sfm2tex.

This module provides the main entry point for the CLI tool.
"""

import logging
import sys
from typing import Optional

from .config import create_argument_parser, Config
from .errors import ConfigurationError, TexturingError
from .events import LoggingEventSink
from .pipeline import TexturingPipeline


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for CLI.

    Args:
        argv: Command-line arguments (None = sys.argv)

    Returns:
        Exit code (0 = success, 1 = error)
    """
    parser = create_argument_parser()

    # Parse arguments
    try:
        args = parser.parse_args(argv)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    # Handle --save-config
    if args.save_config:
        template = Config.generate_default_config_template()
        with open(args.save_config, 'w') as f:
            f.write(template)
        print(f"Default configuration saved to: {args.save_config}")
        print(f"Edit this file and use with: sfm2tex --config {args.save_config}")
        return 0

    # Create config
    try:
        config = Config.from_args(args)
    except ConfigurationError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        print("\nUse --help for usage information or --save-config to generate a template.", file=sys.stderr)
        return 1

    # Configure logging
    logging.basicConfig(level=config.log_level, format="[%(levelname)s] %(name)s: %(message)s")
    logger = logging.getLogger("sfm2tex")

    logger.info("Input scene: %s", config.input_file)
    logger.info("Input mesh: %s", config.input_mesh)
    logger.info("Output folder: %s", config.output_dir)
    logger.info(
        "Texture: %dpx (downscale %d), %s, unwrap method %s",
        config.texturing.texture_side, config.texturing.downscale,
        config.output_texture_file_type.value, config.unwrap_method.value
    )

    try:
        pipeline = TexturingPipeline(config, events=LoggingEventSink(logger))
        mesh_file = pipeline.run()
        logger.info("Textured mesh: %s (%d texture(s))", mesh_file, len(pipeline.texture_files))
        return 0

    except FileNotFoundError as e:
        print(f"Error: File not found: {e}", file=sys.stderr)
        return 1
    except TexturingError as e:
        print(f"Error: {e}", file=sys.stderr)
        if config.log_level <= logging.DEBUG:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
