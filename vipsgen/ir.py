"""Intermediate representation shared by the normalizer and the emitters.

Every record is a frozen dataclass: the normalizer builds them once per run
and the emission engine only reads them.
"""

import enum
from dataclasses import dataclass


# ===--- Argument classification ---=== #


class Category(enum.Enum):
    """Semantic argument categories understood by the marshaling rules."""

    IMAGE = "image"
    BOOL = "bool"
    INT = "int"
    DOUBLE = "double"
    STRING = "string"
    ARRAY_INT = "array_int"
    ARRAY_DOUBLE = "array_double"
    ARRAY_IMAGE = "array_image"
    BLOB = "blob"
    INTERPOLATE = "interpolate"
    SOURCE = "source"
    TARGET = "target"
    ENUM = "enum"

    @property
    def is_array(self) -> bool:
        return self in (Category.ARRAY_INT, Category.ARRAY_DOUBLE, Category.ARRAY_IMAGE)


class Direction(enum.Enum):
    IN = "in"
    OUT = "out"


# ===--- Enums ---=== #


@dataclass(frozen=True)
class EnumValue:
    native_name: str
    generated_name: str
    value: int
    nick: str = ""
    description: str = ""


@dataclass(frozen=True)
class EnumType:
    """A libvips enum or flags type.

    Attributes:
        native_name: GType name, e.g. "VipsExtend".
        generated_name: Target name, e.g. "Extend".
        values: Values in native declaration order. Generated names are
            unique and map one-to-one onto integer values.
        is_flags: True for GFlags types (values combine bitwise).
    """

    native_name: str
    generated_name: str
    values: tuple[EnumValue, ...]
    is_flags: bool = False

    def value_for(self, generated_name: str) -> int:
        for value in self.values:
            if value.generated_name == generated_name:
                return value.value
        raise KeyError(generated_name)

    def name_for(self, value: int) -> str:
        for entry in self.values:
            if entry.value == value:
                return entry.generated_name
        raise KeyError(value)


# ===--- Operations ---=== #


@dataclass(frozen=True)
class Argument:
    """One typed slot of an operation.

    Attributes:
        name: Native argument name, e.g. "out_array".
        identifier: Target identifier for locals and parameters, e.g.
            "outArray".
        field_name: Target identifier used as an options struct field.
        type_name: Native type name, e.g. "VipsArrayDouble".
        category: Semantic category selecting the marshaling rules.
        target_type: Target-language type of the low-level wrapper slot.
        foreign_type: Foreign-call (C) parameter type.
        description: Human description from the library.
        required: Required by the library's own validation.
        is_input: Value flows into the operation.
        is_output: Value flows out of the operation.
        flags: Raw argument flags bitmask.
        enum_name: Generated enum type name when the slot is an enum.
        default: Default value for optional inputs, if known.
        length_name: Native name of the length slot paired with an array.
            For vector outputs this is the folded native length slot.
        is_options_string: Synthesized "key=value" options string slot.
        foreign_name: Identifier of the slot in foreign-call (C) code.
    """

    name: str
    identifier: str
    field_name: str
    type_name: str
    category: Category
    target_type: str
    foreign_type: str
    description: str = ""
    required: bool = True
    is_input: bool = True
    is_output: bool = False
    flags: int = 0
    enum_name: str = ""
    default: bool | int | float | str | None = None
    length_name: str = ""
    is_options_string: bool = False
    foreign_name: str = ""

    @property
    def is_enum(self) -> bool:
        return bool(self.enum_name)

    @property
    def direction(self) -> Direction:
        return Direction.OUT if self.is_output else Direction.IN

    @property
    def is_vector_output(self) -> bool:
        return self.is_output and self.category.is_array


@dataclass(frozen=True)
class Operation:
    """A normalized libvips operation.

    The bucket properties partition ``arguments``: every argument appears in
    exactly one of required_inputs, optional_inputs, outputs and
    optional_outputs.

    Attributes:
        name: Native nickname, e.g. "embed".
        identifier: Generated identifier, e.g. "Embed".
        description: Human description from the library.
        flags: VipsOperationFlags bitmask.
        category: Documentation grouping, e.g. "conversion".
        arguments: Arguments in native order.
        needs_custom_wrapper: A hand-written high-level wrapper replaces
            the generated receiver method.
    """

    name: str
    identifier: str
    description: str
    flags: int
    category: str
    arguments: tuple[Argument, ...]
    needs_custom_wrapper: bool = False

    @property
    def required_inputs(self) -> tuple[Argument, ...]:
        return tuple(a for a in self.arguments if a.is_input and not a.is_output and a.required)

    @property
    def optional_inputs(self) -> tuple[Argument, ...]:
        return tuple(
            a for a in self.arguments if a.is_input and not a.is_output and not a.required
        )

    @property
    def outputs(self) -> tuple[Argument, ...]:
        """Required outputs, returned by every generated call."""
        return tuple(a for a in self.arguments if a.is_output and a.required)

    @property
    def optional_outputs(self) -> tuple[Argument, ...]:
        """Outputs fetched only when the caller asks for them."""
        return tuple(a for a in self.arguments if a.is_output and not a.required)

    @property
    def has_options(self) -> bool:
        return bool(self.optional_inputs or self.optional_outputs)

    @property
    def has_image_input(self) -> bool:
        return any(a.category is Category.IMAGE for a in self.arguments if not a.is_output)

    @property
    def has_image_output(self) -> bool:
        return any(a.category is Category.IMAGE for a in self.outputs)

    @property
    def receiver(self) -> Argument | None:
        """First required image input, which becomes the method receiver."""
        for arg in self.required_inputs:
            if arg.category is Category.IMAGE:
                return arg
        return None


@dataclass(frozen=True)
class ImageFormatInfo:
    tag: str
    symbol: str
    mime_type: str
    order: int
    has_loader: bool = False
    has_saver: bool = False


# ===--- External configuration ---=== #


@dataclass(frozen=True)
class OperationConfig:
    """Per-operation override entry.

    Attributes:
        skip_generation: Never emit this operation.
        needs_custom_wrapper: Emit the low-level wrapper only; the
            receiver-style method is hand-written.
        options_param: When non-empty, name of a synthesized optional
            string argument carrying "key=value" options.
    """

    skip_generation: bool = False
    needs_custom_wrapper: bool = False
    options_param: str = ""


# ===--- Normalizer result ---=== #


@dataclass(frozen=True)
class NormalizedIR:
    """Normalizer output: the IR plus the per-item report.

    Attributes:
        operations: Emitted operations, in discovery order.
        enums: Enum types referenced by the operations, sorted by
            generated name.
        image_formats: Image formats, "unknown" first.
        excluded: Native names dropped by the exclusion set.
        skipped: Native names dropped by a skip_generation override.
        duplicates: (native name, generated identifier) pairs dropped
            because an earlier operation claimed the identifier.
        absent: Native names the catalog could not describe.
    """

    operations: tuple[Operation, ...]
    enums: tuple[EnumType, ...]
    image_formats: tuple[ImageFormatInfo, ...]
    excluded: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    duplicates: tuple[tuple[str, str], ...] = ()
    absent: tuple[str, ...] = ()

    def operation(self, name: str) -> Operation:
        for op in self.operations:
            if op.name == name:
                return op
        raise KeyError(name)
