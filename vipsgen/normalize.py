"""Raw catalog records -> normalized operation IR.

The normalizer applies, per raw operation and in this order: the exclusion
set, the skip_generation override, argument classification (with lazy enum
discovery), options-string synthesis, bucketing, identifier generation and
identifier deduplication. It finally derives the image format table from the
surviving operation names.
"""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace

from vipsgen.catalog import (
    OPTIONAL_INPUT,
    IntrospectionSession,
    RawArgument,
    RawEnumValue,
    RawOperation,
    TypeCatalog,
)
from vipsgen.codegen import (
    guard_reserved,
    snake_to_camel,
    snake_to_pascal,
    split_words,
    upper_snake_to_pascal,
)
from vipsgen.errors import ClassificationError
from vipsgen.ir import (
    Argument,
    Category,
    Direction,
    EnumType,
    EnumValue,
    ImageFormatInfo,
    NormalizedIR,
    Operation,
    OperationConfig,
)
from vipsgen.marshal import GO_TARGET, Target

logger = logging.getLogger(__name__)


# ===--- Argument classification ---=== #

TYPE_CATEGORIES: Mapping[str, Category] = {
    "VipsImage": Category.IMAGE,
    "gboolean": Category.BOOL,
    "gint": Category.INT,
    "guint": Category.INT,
    "gint64": Category.INT,
    "guint64": Category.INT,
    "gdouble": Category.DOUBLE,
    "gchararray": Category.STRING,
    "VipsArrayInt": Category.ARRAY_INT,
    "VipsArrayDouble": Category.ARRAY_DOUBLE,
    "VipsArrayImage": Category.ARRAY_IMAGE,
    "VipsBlob": Category.BLOB,
    "VipsInterpolate": Category.INTERPOLATE,
    "VipsSource": Category.SOURCE,
    "VipsSourceCustom": Category.SOURCE,
    "VipsTarget": Category.TARGET,
    "VipsTargetCustom": Category.TARGET,
}

OPTIONS_STRING_DESCRIPTION = 'Extra options as a "key=value,..." string'

# Type names the generated package declares itself.
RESERVED_TYPE_NAMES = frozenset({"Image", "ImageType", "Interpolate", "Source", "Target"})


def classify_argument(op_name: str, arg: RawArgument) -> Category:
    """Map a raw argument to its semantic category.

    Raises:
        ClassificationError: The native type name is not in TYPE_CATEGORIES
            and is not an enum or flags type.
    """
    if arg.fundamental in ("enum", "flags"):
        return Category.ENUM
    category = TYPE_CATEGORIES.get(arg.type_name)
    if category is None:
        raise ClassificationError(
            op_name, arg.name, arg.type_name, "no marshaling category for this type"
        )
    return category


# ===--- Enum naming ---=== #


def enum_type_name(native_name: str) -> str:
    """VipsExtend -> Extend, VipsForeignPngFilter -> PngFilter."""
    name = native_name
    if name.startswith("Vips"):
        name = name[len("Vips"):]
    if name.startswith("Foreign") and len(name) > len("Foreign"):
        name = name[len("Foreign"):]
    return name or native_name


def _camel_to_upper_snake(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name).upper()


def _common_word_prefix(names: Sequence[str]) -> int:
    """Number of leading words shared by every name, never a whole name."""
    word_lists = [name.upper().split("_") for name in names]
    shortest = min(len(words) for words in word_lists)
    count = 0
    while count < shortest - 1 and len({words[count] for words in word_lists}) == 1:
        count += 1
    return count


def enum_value_names(native_type: str, values: Sequence[RawEnumValue]) -> list[str]:
    """Generated names for enum values, with the shared type prefix removed.

    VIPS_EXTEND_BLACK -> Black; FOO, BAR, BAZ_QUX -> Foo, Bar, BazQux.
    """
    names = [value.name for value in values]
    if len(names) > 1:
        strip = _common_word_prefix(names)
        stripped = ["_".join(name.split("_")[strip:]) for name in names]
    else:
        prefix = _camel_to_upper_snake(native_type) + "_"
        stripped = [name[len(prefix):] if name.upper().startswith(prefix) else name
                    for name in names]
    return [upper_snake_to_pascal(name) or upper_snake_to_pascal(native) for name, native in
            zip(stripped, names)]


def build_enum_type(native_name: str, generated_name: str, is_flags: bool,
                    raw_values: Sequence[RawEnumValue]) -> EnumType:
    """Build an EnumType whose value -> name mapping is a bijection.

    The "last" sentinel is dropped, aliases sharing an integer keep only
    their first name, and later values whose generated name collides get
    their integer appended.
    """
    kept: list[RawEnumValue] = []
    seen_values: set[int] = set()
    for value in raw_values:
        if value.nick == "last" or value.name.upper().endswith("_LAST"):
            continue
        if value.value in seen_values:
            logger.debug("%s: %s aliases value %d, dropped", native_name, value.name, value.value)
            continue
        seen_values.add(value.value)
        kept.append(value)

    values = []
    used: set[str] = set()
    for value, name in zip(kept, enum_value_names(native_name, kept) if kept else []):
        if name in used:
            name = f"{name}{value.value}"
        used.add(name)
        values.append(EnumValue(
            native_name=value.name,
            generated_name=name,
            value=value.value,
            nick=value.nick,
        ))
    return EnumType(
        native_name=native_name,
        generated_name=generated_name,
        values=tuple(values),
        is_flags=is_flags,
    )


# ===--- Image formats ---=== #

KNOWN_FORMATS: tuple[str, ...] = (
    "jpeg", "gif", "png", "webp", "heif", "svg",
    "tiff", "jp2k", "avif", "pdf", "bmp", "magick",
)

# Formats served by another format's operations.
IMPLIED_FORMATS: Mapping[str, str] = {"avif": "heif"}

FORMAT_ALIASES: Mapping[str, str] = {
    "jpg": "jpeg",
    "tif": "tiff",
    "j2k": "jp2k",
    "jp2": "jp2k",
    "matlab": "mat",
    "nifti": "nii",
}

REJECTED_FORMAT_TAGS = frozenset({"profile", "foreign", "icc", "colourspace"})

MIME_TYPES: Mapping[str, str] = {
    "gif": "image/gif",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
    "heif": "image/heif",
    "heic": "image/heic",
    "avif": "image/avif",
    "pdf": "application/pdf",
    "jp2k": "image/jp2",
    "jxl": "image/jxl",
    "exr": "image/x-exr",
    "openexr": "image/openexr",
    "fits": "image/fits",
    "ppm": "image/x-portable-pixmap",
    "pgm": "image/x-portable-graymap",
    "pbm": "image/x-portable-bitmap",
    "pnm": "image/x-portable-anymap",
    "dz": "image/x-deepzoom",
    "vips": "image/vnd.libvips",
    "mat": "application/x-matlab-data",
    "nii": "application/x-nifti",
    "analyze": "application/x-analyze",
    "openslide": "application/x-openslide",
    "csv": "text/csv",
    "matrix": "application/x-matrix",
    "rad": "image/rad",
    "raw": "image/raw",
}

LOAD_RE = re.compile(r"^([a-zA-Z0-9_]+?)(?:load|load_buffer|load_source)(?:_(.+))?$")
SAVE_RE = re.compile(r"^([a-zA-Z0-9_]+?)(?:save|save_buffer|save_target)(?:_(.+))?$")


def normalize_format_tag(raw: str) -> str:
    """Canonical format tag for a load/save name stem, or "" to reject it."""
    tag = raw.strip("_").lower()
    tag = FORMAT_ALIASES.get(tag, tag)
    if not tag or tag in REJECTED_FORMAT_TAGS:
        return ""
    return tag


def _format_symbol(tag: str) -> str:
    return "ImageType" + tag[0].upper() + tag[1:]


def discover_image_formats(
    operation_names: Iterable[str], catalog: TypeCatalog | None = None
) -> list[ImageFormatInfo]:
    """Build the ordered image format table from operation names.

    "unknown" is always entry 0. Known formats follow in KNOWN_FORMATS order,
    each kept when an operation name or the catalog confirms a loader or
    saver (or, for implied formats, when the providing format is kept).
    Tags found in names but missing from KNOWN_FORMATS are appended in
    alphabetical order.
    """
    loaders: set[str] = set()
    savers: set[str] = set()
    for name in operation_names:
        for pattern, found in ((LOAD_RE, loaders), (SAVE_RE, savers)):
            match = pattern.match(name)
            if match:
                tag = normalize_format_tag(match.group(1))
                if tag:
                    found.add(tag)

    def has(tag: str, role: str, found: set[str]) -> bool:
        if tag in found:
            return True
        return catalog is not None and catalog.format_exists(tag, role)

    formats = [ImageFormatInfo(tag="unknown", symbol="ImageTypeUnknown", mime_type="", order=0)]
    kept: set[str] = set()
    for tag in KNOWN_FORMATS:
        provider = IMPLIED_FORMATS.get(tag)
        has_loader = has(tag, "load", loaders)
        has_saver = has(tag, "save", savers)
        if not (has_loader or has_saver) and provider in kept:
            has_loader = has(provider, "load", loaders)
            has_saver = has(provider, "save", savers)
        if not (has_loader or has_saver):
            continue
        kept.add(tag)
        formats.append(ImageFormatInfo(
            tag=tag,
            symbol=_format_symbol(tag),
            mime_type=MIME_TYPES.get(tag, ""),
            order=len(formats),
            has_loader=has_loader,
            has_saver=has_saver,
        ))

    for tag in sorted((loaders | savers) - set(KNOWN_FORMATS)):
        formats.append(ImageFormatInfo(
            tag=tag,
            symbol=_format_symbol(tag),
            mime_type=MIME_TYPES.get(tag, ""),
            order=len(formats),
            has_loader=tag in loaders,
            has_saver=tag in savers,
        ))
    return formats


# ===--- Normalizer ---=== #


class Normalizer:
    """Turns raw catalog records into the IR for one target.

    Args:
        catalog: Source of enum descriptions and format checks.
        session: Run-scoped registry that receives discovered enum types.
        target: Supplies type names and reserved words.
    """

    def __init__(self, catalog: TypeCatalog, session: IntrospectionSession,
                 target: Target = GO_TARGET):
        self._catalog = catalog
        self._session = session
        self._target = target

    def normalize(
        self,
        raw_operations: Iterable[RawOperation],
        overrides: Mapping[str, OperationConfig],
        exclusions: frozenset[str] | set[str],
    ) -> NormalizedIR:
        """Normalize raw operations into the IR.

        Exclusion is checked before the skip_generation override, which is
        checked before anything else is looked at.

        Args:
            raw_operations: Records in discovery order.
            overrides: Per-operation configuration by native name.
            exclusions: Native names never emitted.

        Returns:
            NormalizedIR with operations in input order, referenced enums,
            image formats and the excluded/skipped/duplicate report.

        Raises:
            ClassificationError: An argument type has no category, or an
                argument is neither input nor output.
        """
        operations: list[Operation] = []
        excluded: list[str] = []
        skipped: list[str] = []
        duplicates: list[tuple[str, str]] = []
        claimed: dict[str, str] = {}

        for raw in raw_operations:
            if raw.name in exclusions:
                logger.info("excluded: %s", raw.name)
                excluded.append(raw.name)
                continue
            config = overrides.get(raw.name, OperationConfig())
            if config.skip_generation:
                logger.info("skipped by override: %s", raw.name)
                skipped.append(raw.name)
                continue
            if raw.deprecated:
                logger.debug("deprecated, not generated: %s", raw.name)
                continue

            operation = self.build_operation(raw, config)
            owner = claimed.get(operation.identifier)
            if owner is not None:
                logger.warning(
                    "duplicate identifier %s: %s skipped, already generated for %s",
                    operation.identifier, raw.name, owner,
                )
                duplicates.append((raw.name, operation.identifier))
                continue
            claimed[operation.identifier] = raw.name
            operations.append(operation)

        referenced = {
            arg.type_name
            for op in operations
            for arg in op.arguments
            if arg.category is Category.ENUM
        }
        enums = sorted(
            (self._session.enums[name] for name in referenced),
            key=lambda enum_type: enum_type.generated_name,
        )
        formats = discover_image_formats((op.name for op in operations), self._catalog)

        return NormalizedIR(
            operations=tuple(operations),
            enums=tuple(enums),
            image_formats=tuple(formats),
            excluded=tuple(excluded),
            skipped=tuple(skipped),
            duplicates=tuple(duplicates),
        )

    # ===--- Per-operation ---=== #

    def build_operation(self, raw: RawOperation, config: OperationConfig) -> Operation:
        kept = [arg for arg in raw.arguments if not arg.deprecated]
        length_slots = self._length_slots(raw.name, kept)

        arguments: list[Argument] = []
        for arg in kept:
            if arg.name in length_slots.values():
                continue
            arguments.append(self.build_argument(raw.name, arg, length_slots.get(arg.name, "")))

        if config.options_param and all(a.name != config.options_param for a in arguments):
            arguments.append(self._options_string_argument(config.options_param))

        return Operation(
            name=raw.name,
            identifier=guard_reserved(snake_to_pascal(raw.name), self._target.reserved_words),
            description=raw.description,
            flags=raw.flags,
            category=self._catalog.classify_category(raw.name),
            arguments=tuple(arguments),
            needs_custom_wrapper=config.needs_custom_wrapper,
        )

    def _length_slots(self, op_name: str, arguments: Sequence[RawArgument]) -> dict[str, str]:
        """Map array argument name -> folded length slot name.

        A slot with length_for names its array explicitly. Otherwise an
        integer output called "n" next to a single output array carries
        that array's length.
        """
        by_name = {arg.name: arg for arg in arguments}
        slots: dict[str, str] = {}
        for arg in arguments:
            if arg.length_for and arg.length_for in by_name:
                slots.setdefault(arg.length_for, arg.name)

        n_slot = by_name.get("n")
        if n_slot is not None and n_slot.is_output and "n" not in slots.values():
            arrays = [
                arg for arg in arguments
                if arg.is_output and not arg.fundamental
                and TYPE_CATEGORIES.get(arg.type_name, Category.INT).is_array
                and arg.name not in slots
            ]
            if len(arrays) == 1:
                slots[arrays[0].name] = "n"
            elif arrays:
                logger.debug("%s: ambiguous length slot n for %d arrays", op_name, len(arrays))
        return slots

    def build_argument(self, op_name: str, raw: RawArgument, length_name: str = "") -> Argument:
        if not raw.is_input and not raw.is_output:
            raise ClassificationError(
                op_name, raw.name, raw.type_name, "argument is neither input nor output"
            )
        category = classify_argument(op_name, raw)
        enum_name = ""
        if category is Category.ENUM:
            enum_type = self.resolve_enum(raw.type_name, raw.fundamental == "flags")
            if enum_type is None:
                category = Category.INT
            else:
                enum_name = enum_type.generated_name

        is_output = raw.is_output and not raw.is_input
        direction = Direction.OUT if is_output else Direction.IN
        target_type, foreign_type = self._target.type_names(category, direction, enum_name)
        return Argument(
            name=raw.name,
            identifier=guard_reserved(snake_to_camel(raw.name), self._target.reserved_words),
            field_name=snake_to_pascal(raw.name),
            type_name=raw.type_name,
            category=category,
            target_type=target_type,
            foreign_type=foreign_type,
            description=raw.description,
            required=raw.required,
            is_input=not is_output,
            is_output=is_output,
            flags=raw.flags,
            enum_name=enum_name,
            default=raw.default,
            length_name=length_name if category.is_array else "",
            foreign_name=guard_reserved(
                "_".join(split_words(raw.name)), self._target.foreign_reserved_words
            ),
        )

    def _options_string_argument(self, name: str) -> Argument:
        base = self.build_argument(
            "",
            RawArgument(
                name=name,
                type_name="gchararray",
                description=OPTIONS_STRING_DESCRIPTION,
                flags=int(OPTIONAL_INPUT),
                default="",
            ),
        )
        return replace(base, is_options_string=True)

    # ===--- Enums ---=== #

    def resolve_enum(self, native_name: str, is_flags: bool) -> EnumType | None:
        """Return the session's EnumType for native_name, discovering it once.

        An enum the catalog cannot describe is a recoverable absence: it is
        logged once and None is returned.
        """
        known = self._session.enums.get(native_name)
        if known is not None:
            return known
        if native_name in self._session.missing_enums:
            return None
        raw_values = self._catalog.describe_enum(native_name)
        if not raw_values:
            logger.warning("enum %s is not available, using plain integers", native_name)
            self._session.missing_enums.add(native_name)
            return None
        enum_type = build_enum_type(
            native_name, self._unique_enum_name(native_name), is_flags, raw_values
        )
        return self._session.register_enum(enum_type)

    def _unique_enum_name(self, native_name: str) -> str:
        taken = {e.generated_name for e in self._session.enums.values()} | RESERVED_TYPE_NAMES
        candidates = (
            enum_type_name(native_name),
            native_name[len("Vips"):] if native_name.startswith("Vips") else native_name,
            native_name,
        )
        for candidate in candidates:
            if candidate not in taken:
                return candidate
        raise ClassificationError("", "", native_name, "enum name collides with another enum")
