#!/usr/bin/env python3
"""
CLI module for Stencil Studio - Command-Line Interface

Turns one photograph into a tattoo stencil from a JSON job file: applies the
tone curves, quantizes, blends, and writes both the curved-only image and the
final stencil. Uses Rich for terminal output.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from config_manager import ConfigManager
from stencil_lib import (
    FidelityTier,
    InvalidSettingsError,
    ProcessingSettings,
    StencilError,
    StencilPipeline,
)
from utils import curves_to_json, load_source_image, save_pixels

console = Console()

logger = logging.getLogger('stencil_studio')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger.setLevel(level)
    return logger


# ==================== Config Schema & Validation ====================

VALID_FIDELITIES = [tier.value for tier in FidelityTier]


class ConfigValidationError(Exception):
    """Raised when job config validation fails."""
    pass


def validate_config(config: Dict[str, Any], config_path: Path,
                    defaults: Optional[ConfigManager] = None) -> Dict[str, Any]:
    """
    Validate a job configuration and return the normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        defaults: Preferences supplying default settings

    Returns:
        Validated config with 'settings' replaced by a ProcessingSettings

    Raises:
        ConfigValidationError: If validation fails
    """
    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a JSON object")

    defaults = defaults or ConfigManager()
    errors = []

    if "input" not in config:
        errors.append("Missing required field: 'input'")

    if "output" not in config:
        errors.append("Missing required field: 'output'")

    fidelity = config.get("fidelity", FidelityTier.HIGH.value)
    if fidelity not in VALID_FIDELITIES:
        errors.append(f"Invalid fidelity: '{fidelity}'. Must be one of: {VALID_FIDELITIES}")

    max_dimension = config.get("max_dimension", defaults.get("import", "max_dimension", default=1200))
    try:
        max_dimension = int(max_dimension)
        if max_dimension <= 0:
            errors.append("'max_dimension' must be positive")
    except (ValueError, TypeError):
        errors.append("'max_dimension' must be an integer")

    settings = None
    raw_settings = config.get("settings", {})
    if not isinstance(raw_settings, dict):
        errors.append("'settings' must be an object/dictionary")
    else:
        unknown = set(raw_settings) - {"levels", "opacity", "black_and_white", "curves"}
        if unknown:
            errors.append(f"Unknown settings: {sorted(unknown)}")
        try:
            base = defaults.get_processing_settings()
            curves = dict(base.curves)
            if "curves" in raw_settings:
                if not isinstance(raw_settings["curves"], dict):
                    raise InvalidSettingsError("'curves' must be an object/dictionary")
                curves.update(raw_settings["curves"])
            settings = ProcessingSettings(
                levels=raw_settings.get("levels", base.levels),
                opacity=raw_settings.get("opacity", base.opacity),
                is_black_and_white=raw_settings.get("black_and_white", base.is_black_and_white),
                curves=curves,
            )
        except InvalidSettingsError as e:
            errors.append(str(e))

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent

    def resolve(value: str) -> str:
        path = Path(value)
        if not path.is_absolute():
            path = (config_dir / path).resolve()
        return str(path)

    config["input"] = resolve(config["input"])
    config["output"] = resolve(config["output"])

    if not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input file not found: {config['input']}")

    if config.get("curved_output"):
        config["curved_output"] = resolve(config["curved_output"])
    else:
        output = Path(config["output"])
        ext = ".jpg" if defaults.get("export", "curved_format", default="JPEG").upper() == "JPEG" else output.suffix
        config["curved_output"] = str(output.with_name(f"{output.stem}_curved{ext}"))

    config["fidelity"] = FidelityTier(fidelity)
    config["max_dimension"] = max_dimension
    config["settings"] = settings
    return config


def load_config(config_path: Path, defaults: Optional[ConfigManager] = None) -> Dict[str, Any]:
    """
    Load and validate a job configuration from a JSON file.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    return validate_config(config, config_path, defaults)


# ==================== Image Processing ====================

def process_single_image(config: Dict[str, Any], preferences: Optional[ConfigManager] = None) -> bool:
    """
    Run the stencil pipeline on one image and write both artifacts.

    Args:
        config: Validated job configuration
        preferences: Preferences for tier budgets and export formats

    Returns:
        True if successful, False otherwise
    """
    preferences = preferences or ConfigManager()
    settings: ProcessingSettings = config["settings"]
    tier: FidelityTier = config["fidelity"]

    try:
        input_path = Path(config["input"])
        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        source = load_source_image(input_path, config["max_dimension"])
        logger.info(f"Working size: [cyan]{source.shape[1]}x{source.shape[0]}[/]")

        tier_params = preferences.get_tier_params()
        pipeline = StencilPipeline(source, tier_params=tier_params)

        logger.info(f"Running pipeline ([cyan]{tier.value}[/] fidelity, "
                    f"{settings.levels} levels, {settings.opacity}% opacity"
                    f"{', black & white' if settings.is_black_and_white else ''})...")
        artifacts = pipeline.run(settings, tier)

        palette = artifacts.palette
        logger.info(f"[green]✓[/] Stencil palette: {len(palette)} colors "
                    + " ".join(f"#{r:02x}{g:02x}{b:02x}" for r, g, b in palette))

        curved_path = save_pixels(
            artifacts.curved_only, config["curved_output"],
            quality=preferences.get("export", "curved_quality", default=80))
        logger.info(f"Saved curved image to: [cyan]{curved_path}[/]")

        final_path = save_pixels(artifacts.final, config["output"])
        size_kb = final_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Stencil saved successfully![/] {final_path} ({size_kb:.1f} KB)")
        return True

    except (StencilError, ValueError, OSError) as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]     [bold white]Stencil Studio CLI[/] [dim]- v1.0[/]       [bold cyan]║[/]
[bold cyan]║[/]   Photo to Tattoo Stencil Converter   [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Stencil Studio CLI - Usage[/]

[bold]Basic Usage:[/]
  stencil-studio <job.json>            Process with JSON job file
  stencil-studio --help                Show this help
  stencil-studio --example-config      Generate example job file

[bold]Options:[/]
  --verbose, -v        Enable verbose output
  --quiet, -q          Suppress all but error messages
  --log-file FILE      Write log to file
  --config-file FILE   Preferences file with defaults (default: config.json)

[bold]Settings:[/]
  levels           Number of flat colors, 2-20
  opacity          Stencil layer opacity over the curved image, 0-100
  black_and_white  Quantize luminance and output grayscale
  curves           {"all": [[x, y], ...], "red": [[x, y], ...]}, x from 0 to 255
"""
    console.print(help_text)

    console.print("  [bold]Fidelity tiers:[/]")
    for tier in FidelityTier:
        console.print(f"    • [cyan]{tier.value}[/]")
    console.print()


def generate_example_config():
    """Print an example job file."""
    defaults = ProcessingSettings()
    example = {
        "_comment": "Stencil Studio CLI Job",
        "input": "path/to/photo.jpg",
        "output": "path/to/stencil.png",
        "curved_output": "path/to/stencil_curved.jpg",
        "fidelity": "high",
        "max_dimension": 1200,
        "settings": {
            "levels": defaults.levels,
            "opacity": defaults.opacity,
            "black_and_white": defaults.is_black_and_white,
            "curves": curves_to_json(defaults.curves)
        }
    }

    example_json = json.dumps(example, indent=4)

    console.print("\n[bold cyan]Example Job:[/]\n")
    console.print(Panel(example_json, title="job.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Stencil Studio CLI - Photo to Tattoo Stencil Converter",
        add_help=False
    )

    parser.add_argument('config', nargs='?', help='Path to JSON job file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example job file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--config-file', type=str, default='config.json', help='Preferences file')

    args = parser.parse_args(argv)

    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No job file specified.\n")
        console.print("Usage: stencil-studio <job.json>")
        console.print("       stencil-studio --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Job file not found: {config_path}")
        sys.exit(1)

    preferences = ConfigManager(config_file=args.config_file)

    logger.info(f"Loading job from: [cyan]{config_path}[/]")
    try:
        config = load_config(config_path, preferences)
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)
    except InvalidSettingsError as e:
        logger.error(f"Invalid preferences in '{args.config_file}': {e}")
        sys.exit(1)

    logger.info("[green]✓[/] Job validated")
    logger.info(f"Input:          [cyan]{config['input']}[/]")
    logger.info(f"Output:         [cyan]{config['output']}[/]")
    logger.info(f"Curved output:  [cyan]{config['curved_output']}[/]")
    logger.info("")

    success = process_single_image(config, preferences)

    if success:
        logger.info("")
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("")
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
