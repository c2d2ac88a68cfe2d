"""
Extraction Configuration
========================
Settings shared by every pipeline component, plus logging setup.

Every component receives its configuration at construction time;
nothing here is read from module-level state after startup.

Environment variables (see ExtractionConfig.from_env):
    EXAMPARSER_WORK_DIR, EXAMPARSER_OUTPUT_DIR, EXAMPARSER_DIAGRAM_DIR,
    EXAMPARSER_MODE, EXAMPARSER_DPI, EXAMPARSER_MODEL,
    EXAMPARSER_MAX_RETRIES, EXAMPARSER_LOG_LEVEL, EXAMPARSER_LOG_FILE,
    GEMINI_API_KEY
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

EXTRACTION_MODES = ("auto", "text", "vision")


@dataclass
class ExtractionConfig:
    """Configuration for the extraction pipeline."""

    # Directories
    work_dir: str = "tmp/runs"
    output_dir: str = "output"
    diagram_store_dir: str = "storage/diagrams"

    # Rasterization
    dpi: int = 150
    use_cli_tools: bool = True

    # Diagram filtering
    min_diagram_width: int = 100
    min_diagram_height: int = 80
    watermark_page_threshold: int = 5
    diagram_start_page: int = 2

    # Text grammar
    max_option_length: int = 300
    signature_length: int = 50

    # Extraction mode: auto picks vision when an API key is configured
    mode: str = "auto"

    # External AI provider
    vision_model: str = "gemini-2.0-flash"
    api_key: Optional[str] = None
    max_retries: int = 3
    retry_initial_delay: float = 1.0

    # Vision extras: ask the provider to locate diagrams no embedded image covers
    locate_missing_diagrams: bool = False

    # Output: write the JSON report to output_dir after each run
    save_output: bool = False

    # Background execution
    start_delay: float = 1.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.mode not in EXTRACTION_MODES:
            raise ValueError(
                f"Unknown extraction mode '{self.mode}', "
                f"expected one of {', '.join(EXTRACTION_MODES)}"
            )

    @property
    def resolved_mode(self) -> str:
        """The concrete mode for this run ('text' or 'vision')."""
        if self.mode == "auto":
            return "vision" if self.api_key else "text"
        return self.mode

    @classmethod
    def from_env(cls, **overrides) -> "ExtractionConfig":
        """Build a config from EXAMPARSER_* variables, then apply overrides."""
        env = os.environ
        values = dict(
            work_dir=env.get("EXAMPARSER_WORK_DIR", cls.work_dir),
            output_dir=env.get("EXAMPARSER_OUTPUT_DIR", cls.output_dir),
            diagram_store_dir=env.get(
                "EXAMPARSER_DIAGRAM_DIR", cls.diagram_store_dir
            ),
            mode=env.get("EXAMPARSER_MODE", cls.mode),
            dpi=int(env.get("EXAMPARSER_DPI", cls.dpi)),
            vision_model=env.get("EXAMPARSER_MODEL", cls.vision_model),
            api_key=env.get("GEMINI_API_KEY") or None,
            max_retries=int(env.get("EXAMPARSER_MAX_RETRIES", cls.max_retries)),
            log_level=env.get("EXAMPARSER_LOG_LEVEL", cls.log_level),
            log_file=env.get("EXAMPARSER_LOG_FILE") or None,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the examparser package logger (console + optional file)."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("examparser")
    package_logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Console handler
    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    for handler in package_logger.handlers:
        handler.setLevel(log_level)

    # File handler
    if log_file:
        target = str(Path(log_file).absolute())
        already = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == target
            for h in package_logger.handlers
        )
        if not already:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)
