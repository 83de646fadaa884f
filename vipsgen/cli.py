"""Command line: configuration, the generation pipeline and its report.

Usage:
    vipsgen --output-dir ./vips
    vipsgen --gir /usr/share/gir-1.0/Vips-8.0.gir --gir-ignore-introspectable
    vipsgen --snapshot ops.json --output-dir ./vips
"""

import argparse
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from pathlib import Path

from vipsgen.catalog import (
    IntrospectionSession,
    TypeCatalog,
    capture_snapshot,
    load_snapshot,
    write_snapshot,
)
from vipsgen.config import GenerationTables, default_tables, load_tables
from vipsgen.emit import FileWriteResult, PackageWriteResult, emit
from vipsgen.errors import FatalError
from vipsgen.gir import GirCatalog
from vipsgen.ir import NormalizedIR
from vipsgen.live import LiveCatalog
from vipsgen.marshal import GO_TARGET
from vipsgen.normalize import Normalizer
from vipsgen.templates import BuiltinTemplateLoader, DirectoryTemplateLoader, TemplateLoader

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = Path("vips")
DEFAULT_PACKAGE = "vips"
DEFAULT_GIR_NAMESPACE = "Vips"
DEFAULT_GIR_VERSION = "8.0"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    """Validated command line.

    Attributes:
        output_dir: Directory receiving the generated package.
        package: Go package name of the generated files.
        templates: Directory of <name>.tmpl frames overriding the builtin
            ones, or None.
        static_dir: Directory of files copied verbatim, or None for the
            packaged defaults.
        source: "live", "gir" or "snapshot".
        gir: GIR file when source is "gir".
        gir_namespace: Expected GIR namespace name.
        gir_version: Expected GIR namespace version.
        gir_include: Pattern of non-introspectable GIR entries to read.
        gir_ignore_introspectable: Read every GIR candidate.
        snapshot: Snapshot file when source is "snapshot".
        dump_snapshot: Where to write a snapshot of the discovered records.
        library: libvips shared library name or path for the live source.
        tables: Override and exclusion tables in effect.
        log_level: Level passed to logging.basicConfig.
    """

    output_dir: Path
    package: str
    templates: Path | None
    static_dir: Path | None
    source: str
    gir: Path | None
    gir_namespace: str
    gir_version: str
    gir_include: str | None
    gir_ignore_introspectable: bool
    snapshot: Path | None
    dump_snapshot: Path | None
    library: str | None
    tables: GenerationTables
    log_level: int


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "CONFLICT_SOURCE_FLAGS",
    "GIR_FLAGS_WITHOUT_GIR",
    "INVALID_REGEX",
    "INVALID_PACKAGE_NAME",
    "INVALID_CONFIG_FILE",
}
_PACKAGE_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vipsgen", description="Generate Go bindings for libvips operations"
    )

    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--package", type=str, default=DEFAULT_PACKAGE)
    parser.add_argument("--templates", type=Path, default=None)
    parser.add_argument("--static-dir", type=Path, default=None)

    parser.add_argument("--gir", type=Path, default=None)
    parser.add_argument("--gir-namespace", type=str, default=None)
    parser.add_argument("--gir-version", type=str, default=None)
    parser.add_argument("--gir-include", type=str, default=None)
    parser.add_argument("--gir-ignore-introspectable", action="store_true", default=False)

    parser.add_argument("--snapshot", type=Path, default=None)
    parser.add_argument("--dump-snapshot", type=Path, default=None)
    parser.add_argument("--library", type=str, default=None)
    parser.add_argument("--config", type=Path, default=None)

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", default=False)
    verbosity.add_argument("--quiet", "-q", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    if args.gir is not None and args.snapshot is not None:
        raise ConfigError(
            "CONFLICT_SOURCE_FLAGS",
            "Cannot combine --gir with --snapshot.",
            "Choose one source: --gir FILE, --snapshot FILE, or neither for live libvips.",
        )

    gir_only = [
        flag
        for flag, value in (
            ("--gir-namespace", args.gir_namespace),
            ("--gir-version", args.gir_version),
            ("--gir-include", args.gir_include),
            ("--gir-ignore-introspectable", args.gir_ignore_introspectable or None),
        )
        if value is not None
    ]
    if gir_only and args.gir is None:
        raise ConfigError(
            "GIR_FLAGS_WITHOUT_GIR",
            f"{', '.join(gir_only)} requires --gir.",
            "Add --gir /path/to/Vips-8.0.gir or remove the GIR flags.",
        )

    if args.gir_include is not None:
        try:
            re.compile(args.gir_include)
        except re.error as err:
            raise ConfigError(
                "INVALID_REGEX",
                f"Invalid --gir-include pattern {args.gir_include!r}: {err}",
                "Pass a Python regular expression, e.g. --gir-include '^(embed|flip)$'.",
            ) from err

    if not _PACKAGE_RE.match(args.package):
        raise ConfigError(
            "INVALID_PACKAGE_NAME",
            f"Invalid Go package name: {args.package}",
            "Use lower case letters, digits and underscores, starting with a letter.",
        )

    gir = None
    snapshot = None
    source = "live"
    if args.gir is not None:
        gir = validate_path_exists(args.gir, "--gir", "Pass the Vips GIR file, usually "
                                   "/usr/share/gir-1.0/Vips-8.0.gir")
        source = "gir"
    elif args.snapshot is not None:
        snapshot = validate_path_exists(
            args.snapshot, "--snapshot", "Write one first with --dump-snapshot FILE."
        )
        source = "snapshot"

    templates = (
        validate_path_exists(args.templates, "--templates") if args.templates else None
    )
    static_dir = (
        validate_path_exists(args.static_dir, "--static-dir") if args.static_dir else None
    )

    tables = default_tables()
    if args.config is not None:
        config_path = validate_path_exists(args.config, "--config")
        try:
            tables = load_tables(config_path)
        except (OSError, ValueError) as err:
            raise ConfigError(
                "INVALID_CONFIG_FILE",
                f"Cannot use --config {config_path}: {err}",
                'Expected a JSON object with optional "exclude", "include" and "overrides" keys.',
            ) from err

    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO

    return GenerateConfig(
        output_dir=args.output_dir,
        package=args.package,
        templates=templates,
        static_dir=static_dir,
        source=source,
        gir=gir,
        gir_namespace=args.gir_namespace or DEFAULT_GIR_NAMESPACE,
        gir_version=args.gir_version or DEFAULT_GIR_VERSION,
        gir_include=args.gir_include,
        gir_ignore_introspectable=bool(args.gir_ignore_introspectable),
        snapshot=snapshot,
        dump_snapshot=args.dump_snapshot,
        library=args.library,
        tables=tables,
        log_level=log_level,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Pipeline ---=== #


def open_catalog(config: GenerateConfig, session: IntrospectionSession) -> TypeCatalog:
    """Construct the catalog selected by config.source."""
    if config.source == "gir":
        return GirCatalog(
            config.gir,
            namespace=config.gir_namespace,
            version=config.gir_version,
            include=config.gir_include,
            ignore_introspectable=config.gir_ignore_introspectable,
        )
    if config.source == "snapshot":
        return load_snapshot(config.snapshot)
    return LiveCatalog(session, library=config.library)


def build_template_loader(templates: Path | None) -> TemplateLoader:
    builtin = BuiltinTemplateLoader()
    if templates is None:
        return builtin
    return DirectoryTemplateLoader(templates, fallback=builtin)


def run_generate(config: GenerateConfig) -> PackageWriteResult:
    """Execute the generation pipeline for a GenerateConfig.

    Stages: open catalog -> describe operations -> (optional snapshot) ->
    normalize -> emit -> report.

    Args:
        config: Validated GenerateConfig from build_config.

    Returns:
        PackageWriteResult describing every file written.

    Raises:
        FatalError: Runtime, descriptor, classification, marshaling or
            emission failure.
        OSError: A source file is unreadable.
        ET.ParseError: The GIR file is malformed.
    """
    session = IntrospectionSession()
    catalog = open_catalog(config, session)
    print(f"Discovering: {catalog.source_label}")

    records, absent = catalog.collect_operations()
    print(f"  Discovered: {len(records)} operations, {len(absent)} unavailable")

    if config.dump_snapshot is not None:
        write_snapshot(config.dump_snapshot, capture_snapshot(catalog))
        print(f"  Snapshot: {config.dump_snapshot}")

    normalizer = Normalizer(catalog, session, GO_TARGET)
    ir = normalizer.normalize(records, config.tables.overrides, config.tables.exclusions)
    ir = replace(ir, absent=tuple(absent))
    print(
        f"  Normalized: {len(ir.operations)} operations, {len(ir.enums)} enums, "
        f"{len(ir.image_formats)} image formats"
    )

    loader = build_template_loader(config.templates)
    result = emit(
        ir,
        GO_TARGET,
        loader,
        config.output_dir,
        static_dir=config.static_dir,
        package=config.package,
    )
    print(
        f"  Written: {len(result.files)} files, "
        f"{result.total_lines} lines to {result.output_dir}"
    )

    summary = build_generation_summary(catalog.source_label, len(records), ir, result)
    print_generation_summary(summary)
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation console report.

    Attributes:
        source_label: Where the operations came from.
        output_dir: Output directory as a string.
        discovered: Operations the catalog listed, including unavailable ones.
        emitted: Operations present in the generated files.
        enums: Enum types emitted.
        image_formats: Image format entries emitted, "unknown" included.
        excluded: Names dropped by the exclusion set.
        skipped: Names dropped by a skip_generation override.
        duplicates: (name, identifier) pairs dropped as duplicates.
        absent: Names the catalog listed but could not describe.
        files: Write results in write order.
    """

    source_label: str
    output_dir: str
    discovered: int
    emitted: int
    enums: int
    image_formats: int
    excluded: tuple[str, ...]
    skipped: tuple[str, ...]
    duplicates: tuple[tuple[str, str], ...]
    absent: tuple[str, ...]
    files: tuple[FileWriteResult, ...]


def build_generation_summary(
    source_label: str,
    described: int,
    ir: NormalizedIR,
    write_result: PackageWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        source_label=source_label,
        output_dir=str(write_result.output_dir),
        discovered=described + len(ir.absent),
        emitted=len(ir.operations),
        enums=len(ir.enums),
        image_formats=len(ir.image_formats),
        excluded=ir.excluded,
        skipped=ir.skipped,
        duplicates=ir.duplicates,
        absent=ir.absent,
        files=write_result.files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the console report.

    Returns a string with exactly one trailing newline. The per-item section
    is omitted when nothing was excluded, skipped, duplicated or missing.
    """
    lines: list[str] = []
    lines.append("libvips bindings generated:")
    lines.append("")
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append("")
    lines.append("  Operations:")

    def _count_row(label: str, count: int) -> str:
        return f"    {label:<15}{count:>6}"

    lines.append(_count_row("Discovered:", summary.discovered))
    lines.append(_count_row("Excluded:", len(summary.excluded)))
    lines.append(_count_row("Skipped:", len(summary.skipped)))
    lines.append(_count_row("Duplicates:", len(summary.duplicates)))
    lines.append(_count_row("Unavailable:", len(summary.absent)))
    lines.append(_count_row("Emitted:", summary.emitted))
    lines.append("")
    lines.append(f"  Enums:          {summary.enums:>6}")
    lines.append(f"  Image formats:  {summary.image_formats:>6}")

    items = (
        [f"    excluded     {name}" for name in summary.excluded]
        + [f"    skipped      {name}" for name in summary.skipped]
        + [f"    duplicate    {name} ({identifier})" for name, identifier in summary.duplicates]
        + [f"    unavailable  {name}" for name in summary.absent]
    )
    if items:
        lines.append("")
        lines.append("  Not generated:")
        lines.extend(items)

    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        line_str = f"{file_result.line_count:>6,} lines"
        marker = "  (static)" if file_result.static else ""
        lines.append(f"    {file_result.filename:<16} {line_str}{marker}")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main ---=== #


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    logging.basicConfig(
        level=config.log_level, format="%(levelname)s %(name)s: %(message)s"
    )

    try:
        run_generate(config)
    except FatalError as err:
        print(f"Fatal: {err}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err
