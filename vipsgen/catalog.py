"""Type catalogs: how operations and their types are discovered.

A TypeCatalog hides whether operations come from the live libvips runtime,
from a GIR descriptor, or from a captured JSON snapshot. Every variant
produces the same raw records, so nothing downstream depends on how
discovery happened.
"""

import abc
import enum
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple

from vipsgen.errors import CatalogError
from vipsgen.ir import EnumType

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1

# VipsOperationFlags
OPERATION_DEPRECATED = 8


class ArgumentFlags(enum.IntFlag):
    """VipsArgumentFlags, as reported by vips_object_get_args."""

    NONE = 0
    REQUIRED = 1
    CONSTRUCT = 2
    SET_ONCE = 4
    SET_ALWAYS = 8
    INPUT = 16
    OUTPUT = 32
    DEPRECATED = 64
    MODIFY = 128


REQUIRED_INPUT = ArgumentFlags.REQUIRED | ArgumentFlags.CONSTRUCT | ArgumentFlags.INPUT
OPTIONAL_INPUT = ArgumentFlags.CONSTRUCT | ArgumentFlags.INPUT
REQUIRED_OUTPUT = ArgumentFlags.REQUIRED | ArgumentFlags.CONSTRUCT | ArgumentFlags.OUTPUT
OPTIONAL_OUTPUT = ArgumentFlags.CONSTRUCT | ArgumentFlags.OUTPUT


# ===--- Raw records ---=== #


class RawEnumValue(NamedTuple):
    name: str
    value: int
    nick: str


@dataclass(frozen=True)
class RawArgument:
    """One argument exactly as a catalog reports it.

    Attributes:
        name: Native argument name.
        type_name: GType name, e.g. "gint" or "VipsImage".
        fundamental: "enum" or "flags" for enumerated types, else "".
        description: Argument blurb.
        flags: ArgumentFlags bitmask.
        default: Default value for optional inputs, when known.
        length_for: Name of the array argument whose element count this
            slot carries, when the slot is a length rather than a value.
    """

    name: str
    type_name: str
    fundamental: str = ""
    description: str = ""
    flags: int = int(REQUIRED_INPUT)
    default: bool | int | float | str | None = None
    length_for: str = ""

    @property
    def required(self) -> bool:
        return bool(self.flags & ArgumentFlags.REQUIRED)

    @property
    def is_input(self) -> bool:
        return bool(self.flags & ArgumentFlags.INPUT)

    @property
    def is_output(self) -> bool:
        return bool(self.flags & ArgumentFlags.OUTPUT)

    @property
    def deprecated(self) -> bool:
        return bool(self.flags & ArgumentFlags.DEPRECATED)


@dataclass(frozen=True)
class RawOperation:
    name: str
    description: str
    flags: int = 0
    arguments: tuple[RawArgument, ...] = ()

    @property
    def deprecated(self) -> bool:
        return bool(self.flags & OPERATION_DEPRECATED)


# ===--- Session ---=== #


@dataclass
class IntrospectionSession:
    """Discovery state for one generation run.

    Constructed once per run and threaded through the catalog and the
    normalizer, then discarded.

    Attributes:
        enums: Enum types discovered so far, keyed by native type name.
        missing_enums: Native enum names the catalog could not describe.
        strings: Interned values crossing the foreign-call boundary, keyed
            by their text. Written once per key.
    """

    enums: dict[str, EnumType] = field(default_factory=dict)
    missing_enums: set[str] = field(default_factory=set)
    strings: dict[str, Any] = field(default_factory=dict)

    def intern(self, text: str, factory: Callable[[str], Any]) -> Any:
        interned = self.strings.get(text)
        if interned is None:
            interned = factory(text)
            self.strings[text] = interned
        return interned

    def register_enum(self, enum_type: EnumType) -> EnumType:
        existing = self.enums.get(enum_type.native_name)
        if existing is not None:
            return existing
        self.enums[enum_type.native_name] = enum_type
        return enum_type


# ===--- Category heuristics ---=== #


class _CategoryRule(NamedTuple):
    category: str
    names: frozenset[str] = frozenset()
    prefixes: tuple[str, ...] = ()
    contains: tuple[str, ...] = ()


CATEGORY_RULES: tuple[_CategoryRule, ...] = (
    _CategoryRule("foreign", contains=("load", "save")),
    _CategoryRule("draw", prefixes=("draw_",)),
    _CategoryRule("histogram", prefixes=("hist_",), names=frozenset({
        "maplut", "percent", "stdif", "case",
    })),
    _CategoryRule("convolution", prefixes=("conv",), names=frozenset({
        "compass", "sharpen", "gaussblur", "canny", "sobel", "prewitt", "scharr",
        "fastcor", "spcor", "gaussmat", "logmat",
    })),
    _CategoryRule("morphology", prefixes=("morph",), names=frozenset({
        "rank", "median", "countlines", "labelregions", "fill_nearest",
    })),
    _CategoryRule("resample", prefixes=("reduce", "shrink"), names=frozenset({
        "affine", "resize", "rotate", "similarity", "mapim", "quadratic",
        "thumbnail", "thumbnail_image", "thumbnail_buffer", "thumbnail_source",
    })),
    _CategoryRule("colour", prefixes=("icc_", "Lab", "LCh", "XYZ", "sRGB", "scRGB",
                                      "HSV", "CMYK", "Yxy", "CMC", "dE"), contains=("2sRGB",),
                  names=frozenset({"colourspace", "float2rad", "rad2float", "LabQ2LabS",
                                   "LabS2LabQ", "LabS2Lab", "uhdr2scRGB"})),
    _CategoryRule("arithmetic", prefixes=("math", "complex", "boolean", "relational",
                                          "remainder"), names=frozenset({
        "add", "subtract", "multiply", "divide", "abs", "linear", "round", "sign",
        "avg", "min", "max", "deviate", "stats", "measure", "getpoint", "sum",
        "invert", "find_trim", "hough_line", "hough_circle", "project", "profile",
    })),
    _CategoryRule("conversion", prefixes=("band", "extract_", "rot", "flip"), names=frozenset({
        "copy", "embed", "crop", "cast", "flatten", "premultiply", "unpremultiply",
        "gravity", "zoom", "wrap", "replicate", "arrayjoin", "grid", "join", "insert",
        "ifthenelse", "recomb", "smartcrop", "msb", "byteswap", "falsecolour",
        "gamma", "scale", "subsample", "tilecache", "linecache", "sequential",
        "composite", "composite2", "autorot", "transpose3d", "addalpha",
    })),
)


def classify_category(name: str) -> str:
    """Return the documentation group of an operation name.

    Pure name matching against CATEGORY_RULES, first rule wins. Used for
    grouping generated documentation only, never for inclusion decisions.
    """
    for rule in CATEGORY_RULES:
        if name in rule.names:
            return rule.category
        if any(name.startswith(prefix) for prefix in rule.prefixes):
            return rule.category
        if any(part in name for part in rule.contains):
            return rule.category
    return "operation"


# ===--- Catalog interface ---=== #


class TypeCatalog(abc.ABC):
    """Source of raw operation and enum records."""

    @property
    @abc.abstractmethod
    def source_label(self) -> str:
        """Short description of where records come from, for reports."""

    @abc.abstractmethod
    def discover_operation_names(self) -> list[str]:
        """Return every usable operation nickname, sorted and unique."""

    @abc.abstractmethod
    def describe_operation(self, name: str) -> RawOperation | None:
        """Return the raw record of an operation, or None when absent."""

    @abc.abstractmethod
    def describe_enum(self, type_name: str) -> list[RawEnumValue] | None:
        """Return the values of an enum or flags type, or None when absent."""

    def format_exists(self, tag: str, role: str) -> bool:
        """True when a loader (role "load") or saver (role "save") exists for tag."""
        if role not in ("load", "save"):
            raise ValueError(f"Unknown format role: {role}")
        names = set(self.discover_operation_names())
        suffixes = ("", "_buffer", "_source") if role == "load" else ("", "_buffer", "_target")
        return any(f"{tag}{role}{suffix}" in names for suffix in suffixes)

    def classify_category(self, name: str) -> str:
        return classify_category(name)

    def collect_operations(self) -> tuple[list[RawOperation], list[str]]:
        """Describe every discovered operation.

        Returns:
            (records, absent): records in discovery order, and the names of
            operations the catalog listed but could not describe.
        """
        records = []
        absent = []
        for name in self.discover_operation_names():
            record = self.describe_operation(name)
            if record is None:
                logger.warning("operation %s is not available, skipping", name)
                absent.append(name)
                continue
            records.append(record)
        return records, absent

    def describe_all(self) -> list[RawOperation]:
        """Describe every discovered operation, dropping absent ones."""
        return self.collect_operations()[0]


# ===--- Snapshots ---=== #


class SnapshotCatalog(TypeCatalog):
    """Catalog backed by previously captured raw records."""

    def __init__(
        self,
        operations: Iterable[RawOperation],
        enums: dict[str, list[RawEnumValue]] | None = None,
        source: str = "snapshot",
    ):
        self._operations = {op.name: op for op in operations}
        self._enums = dict(enums or {})
        self._source = source

    @property
    def source_label(self) -> str:
        return self._source

    def discover_operation_names(self) -> list[str]:
        return sorted(self._operations)

    def describe_operation(self, name: str) -> RawOperation | None:
        return self._operations.get(name)

    def describe_enum(self, type_name: str) -> list[RawEnumValue] | None:
        values = self._enums.get(type_name)
        return list(values) if values is not None else None

    def operations(self) -> list[RawOperation]:
        return [self._operations[name] for name in sorted(self._operations)]

    def enum_names(self) -> list[str]:
        return sorted(self._enums)


def capture_snapshot(catalog: TypeCatalog) -> SnapshotCatalog:
    """Materialize every record of a catalog, including referenced enums."""
    operations = catalog.describe_all()
    enums: dict[str, list[RawEnumValue]] = {}
    for op in operations:
        for arg in op.arguments:
            if not arg.fundamental or arg.type_name in enums:
                continue
            values = catalog.describe_enum(arg.type_name)
            if values is not None:
                enums[arg.type_name] = values
    return SnapshotCatalog(operations, enums, source=catalog.source_label)


def snapshot_to_dict(catalog: SnapshotCatalog) -> dict[str, Any]:
    operations = []
    for op in catalog.operations():
        operations.append({
            "name": op.name,
            "description": op.description,
            "flags": op.flags,
            "arguments": [
                {
                    "name": arg.name,
                    "type_name": arg.type_name,
                    "fundamental": arg.fundamental,
                    "description": arg.description,
                    "flags": arg.flags,
                    "default": arg.default,
                    "length_for": arg.length_for,
                }
                for arg in op.arguments
            ],
        })
    enums = {
        type_name: [list(value) for value in catalog.describe_enum(type_name) or []]
        for type_name in catalog.enum_names()
    }
    return {
        "format": SNAPSHOT_FORMAT,
        "source": catalog.source_label,
        "operations": operations,
        "enums": enums,
    }


def _field(record: dict[str, Any], key: str, where: str) -> Any:
    try:
        return record[key]
    except KeyError:
        raise CatalogError(f"Snapshot {where} is missing {key!r}") from None


def snapshot_from_dict(data: dict[str, Any]) -> SnapshotCatalog:
    if data.get("format") != SNAPSHOT_FORMAT:
        raise CatalogError(
            f"Unsupported snapshot format {data.get('format')!r}, expected {SNAPSHOT_FORMAT}"
        )
    operations = []
    for index, raw_op in enumerate(data.get("operations", [])):
        op_name = _field(raw_op, "name", f"operation #{index}")
        arguments = tuple(
            RawArgument(
                name=_field(raw_arg, "name", f"argument of {op_name}"),
                type_name=_field(raw_arg, "type_name", f"argument of {op_name}"),
                fundamental=raw_arg.get("fundamental", ""),
                description=raw_arg.get("description", ""),
                flags=int(raw_arg.get("flags", REQUIRED_INPUT)),
                default=raw_arg.get("default"),
                length_for=raw_arg.get("length_for", ""),
            )
            for raw_arg in raw_op.get("arguments", [])
        )
        operations.append(
            RawOperation(
                name=op_name,
                description=raw_op.get("description", ""),
                flags=int(raw_op.get("flags", 0)),
                arguments=arguments,
            )
        )
    enums = {
        type_name: [RawEnumValue(str(n), int(v), str(k)) for n, v, k in values]
        for type_name, values in data.get("enums", {}).items()
    }
    return SnapshotCatalog(operations, enums, source=data.get("source", "snapshot"))


def write_snapshot(path: Path, catalog: SnapshotCatalog) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(snapshot_to_dict(catalog), indent=2, sort_keys=True)
    path.write_text(text + "\n", encoding="utf-8")
    logger.info("wrote snapshot of %d operations to %s",
                len(catalog.discover_operation_names()), path)


def load_snapshot(path: Path) -> SnapshotCatalog:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise CatalogError(f"Snapshot {path} is not valid JSON: {err}") from err
    if not isinstance(data, dict):
        raise CatalogError(f"Snapshot {path} must contain a JSON object")
    return snapshot_from_dict(data)
