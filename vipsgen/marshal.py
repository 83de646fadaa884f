"""Marshaling rule tables.

A rule describes how one argument crosses one layer of the generated
bindings: what it declares, what must run before the call, the expression
handed to the call, and what runs after it. Rules are keyed by
(Category, Direction) per layer, and a Target bundles the tables of one
output language. Lookups never fall back to a default: a missing entry is a
MarshalingError, because guessing would produce wrong glue code.
"""

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from vipsgen.errors import MarshalingError
from vipsgen.ir import Argument, Category, Direction


class Layer(enum.Enum):
    """Layers of the generated bindings, outermost last."""

    SHIM = "shim"  # C function driving a VipsOperation
    WRAPPER = "wrapper"  # Go function calling the C shim
    RECEIVER = "receiver"  # Go method or constructor on the managed Image


@dataclass(frozen=True)
class MarshalRule:
    """Code fragments for one argument at one layer.

    Fragments are str.format templates over the argument context built by
    argument_context(): {name}, {c}, {go}, {field}, {enum}, {type}.

    Attributes:
        declaration: Parameter declarations (inputs, and shim outputs) or
            local variable declarations (wrapper outputs).
        pre_call: Statements run before the call.
        call_expr: Expression passed to the call. For shim outputs it is
            the pointer handed to g_object_get after the build.
        post_call: Statements run after a successful call.
        value_type: Type of the slot at this layer.
        result_expr: Expression returned for an output.
        zero_value: Value returned for an output on the error path.
        guard: Shim only: condition under which an optional input is set,
            or under which an optional output is fetched.
    """

    declaration: tuple[str, ...] = ()
    pre_call: tuple[str, ...] = ()
    call_expr: str = ""
    post_call: tuple[str, ...] = ()
    value_type: str = ""
    result_expr: str = ""
    zero_value: str = ""
    guard: str = ""

    def bind(self, context: Mapping[str, str]) -> "MarshalRule":
        """Return a copy with every fragment formatted against context."""

        def fmt(text: str) -> str:
            return text.format(**context)

        return replace(
            self,
            declaration=tuple(fmt(text) for text in self.declaration),
            pre_call=tuple(fmt(text) for text in self.pre_call),
            call_expr=fmt(self.call_expr),
            post_call=tuple(fmt(text) for text in self.post_call),
            value_type=fmt(self.value_type),
            result_expr=fmt(self.result_expr),
            zero_value=fmt(self.zero_value),
            guard=fmt(self.guard),
        )


RuleTable = Mapping[tuple[Category, Direction], MarshalRule]


def argument_context(arg: Argument) -> dict[str, str]:
    return {
        "name": arg.name,
        "c": arg.foreign_name or arg.name,
        "go": arg.identifier,
        "field": arg.field_name,
        "enum": arg.enum_name,
        "type": arg.target_type,
    }


@dataclass(frozen=True)
class Target:
    """Everything the normalizer and emitter need to know about a language.

    Attributes:
        name: Short target name.
        tables: Rule table per layer.
        reserved_words: Identifiers that get an underscore appended in
            target-language code.
        foreign_reserved_words: Same for foreign-call (C) code.
    """

    name: str
    tables: Mapping[Layer, RuleTable]
    reserved_words: frozenset[str]
    foreign_reserved_words: frozenset[str]

    def find_rule(
        self, layer: Layer, category: Category, direction: Direction
    ) -> MarshalRule | None:
        return self.tables.get(layer, {}).get((category, direction))

    def rule(self, layer: Layer, category: Category, direction: Direction) -> MarshalRule:
        found = self.find_rule(layer, category, direction)
        if found is None:
            raise MarshalingError(
                f"{self.name} target has no {layer.value} rule for "
                f"{category.value} {direction.value}"
            )
        return found

    def bound_rule(self, layer: Layer, arg: Argument) -> MarshalRule:
        rule = self.rule(layer, arg.category, arg.direction)
        return rule.bind(argument_context(arg))

    def type_names(self, category: Category, direction: Direction, enum_name: str = "") -> tuple[str, str]:
        """Return (target type, foreign-call type) of a slot.

        A side without a rule yields "". The emitter reports the missing
        rule when it resolves the operation's arguments.
        """
        names = []
        for layer in (Layer.WRAPPER, Layer.SHIM):
            found = self.find_rule(layer, category, direction)
            names.append(found.value_type.format(enum=enum_name) if found else "")
        return names[0], names[1]


def decode_vector(pointer: Any, length: int) -> list[Any]:
    """Copy a pointer-and-length pair into a list.

    Works on anything indexable: cffi pointers returned by libvips as well
    as plain sequences. Exactly ``length`` elements are read, in order.

    Raises:
        ValueError: length is negative, or pointer is NULL while length is
            non-zero.
    """
    length = int(length)
    if length < 0:
        raise ValueError(f"Negative vector length: {length}")
    if length == 0:
        return []
    if pointer is None or (not isinstance(pointer, Sequence) and not pointer):
        raise ValueError(f"NULL vector pointer with length {length}")
    return [pointer[i] for i in range(length)]


# ===--- Go target: C shim layer ---=== #


def _c_scalar(c_type: str) -> dict[Direction, MarshalRule]:
    return {
        Direction.IN: MarshalRule(
            declaration=(f"{c_type} {{c}}",), call_expr="{c}", value_type=c_type,
        ),
        Direction.OUT: MarshalRule(
            declaration=(f"{c_type}* {{c}}",),
            call_expr="{c}",
            value_type=f"{c_type}*",
            guard="{c} != NULL",
        ),
    }


def _c_pointer(c_type: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{c_type}* {{c}}",),
        call_expr="{c}",
        value_type=f"{c_type}*",
        guard="{c} != NULL",
    )


def _c_array_in(element: str, array_type: str, constructor: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{element}* {{c}}", "int {c}_n"),
        pre_call=(f"{array_type} *{{c}}_array = {constructor}({{c}}, {{c}}_n);",),
        call_expr="{c}_array",
        post_call=("vips_area_unref(VIPS_AREA({c}_array));",),
        value_type=f"{element}*",
        guard="{c}_n > 0",
    )


def _c_vector_out(element: str, array_type: str, taker: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{element}** {{c}}", "int* {c}_n"),
        pre_call=(f"{array_type} *{{c}}_array = NULL;",),
        call_expr="&{c}_array",
        post_call=(f"*{{c}} = {taker}({{c}}_array, {{c}}_n);",),
        value_type=f"{element}**",
        guard="{c} != NULL",
    )


C_SHIM_RULES: dict[tuple[Category, Direction], MarshalRule] = {
    (Category.IMAGE, Direction.IN): _c_pointer("VipsImage"),
    (Category.IMAGE, Direction.OUT): MarshalRule(
        declaration=("VipsImage** {c}",),
        call_expr="{c}",
        value_type="VipsImage**",
        guard="{c} != NULL",
    ),
    (Category.BOOL, Direction.IN): _c_scalar("gboolean")[Direction.IN],
    (Category.BOOL, Direction.OUT): _c_scalar("gboolean")[Direction.OUT],
    (Category.INT, Direction.IN): _c_scalar("int")[Direction.IN],
    (Category.INT, Direction.OUT): _c_scalar("int")[Direction.OUT],
    (Category.DOUBLE, Direction.IN): _c_scalar("double")[Direction.IN],
    (Category.DOUBLE, Direction.OUT): _c_scalar("double")[Direction.OUT],
    (Category.ENUM, Direction.IN): _c_scalar("int")[Direction.IN],
    (Category.ENUM, Direction.OUT): _c_scalar("int")[Direction.OUT],
    (Category.STRING, Direction.IN): MarshalRule(
        declaration=("const char* {c}",),
        call_expr="{c}",
        value_type="const char*",
        guard="{c} != NULL && {c}[0] != '\\0'",
    ),
    (Category.STRING, Direction.OUT): MarshalRule(
        declaration=("char** {c}",),
        call_expr="{c}",
        value_type="char**",
        guard="{c} != NULL",
    ),
    (Category.ARRAY_INT, Direction.IN): _c_array_in("int", "VipsArrayInt", "vips_array_int_new"),
    (Category.ARRAY_INT, Direction.OUT): _c_vector_out(
        "int", "VipsArrayInt", "vipsgen_take_int_array"
    ),
    (Category.ARRAY_DOUBLE, Direction.IN): _c_array_in(
        "double", "VipsArrayDouble", "vips_array_double_new"
    ),
    (Category.ARRAY_DOUBLE, Direction.OUT): _c_vector_out(
        "double", "VipsArrayDouble", "vipsgen_take_double_array"
    ),
    (Category.ARRAY_IMAGE, Direction.IN): _c_array_in(
        "VipsImage*", "VipsArrayImage", "vips_array_image_new"
    ),
    (Category.BLOB, Direction.IN): MarshalRule(
        declaration=("void* {c}", "size_t {c}_n"),
        pre_call=("VipsBlob *{c}_blob = {c}_n > 0 ? vips_blob_copy({c}, {c}_n) : NULL;",),
        call_expr="{c}_blob",
        post_call=("if ({c}_blob)", "\tvips_area_unref(VIPS_AREA({c}_blob));"),
        value_type="void*",
        guard="{c}_n > 0",
    ),
    (Category.BLOB, Direction.OUT): MarshalRule(
        declaration=("VipsBlob** {c}",),
        call_expr="{c}",
        value_type="VipsBlob**",
        guard="{c} != NULL",
    ),
    (Category.INTERPOLATE, Direction.IN): _c_pointer("VipsInterpolate"),
    (Category.SOURCE, Direction.IN): _c_pointer("VipsSource"),
    (Category.TARGET, Direction.IN): _c_pointer("VipsTarget"),
}


# ===--- Go target: low-level wrapper layer ---=== #


def _go_scalar_in(go_type: str, convert: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{{go}} {go_type}",), call_expr=convert, value_type=go_type,
    )


def _go_scalar_out(c_type: str, go_type: str, result: str, zero: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"var c{{field}} {c_type}",),
        call_expr="&c{field}",
        value_type=go_type,
        result_expr=result,
        zero_value=zero,
    )


def _go_array_in(go_type: str, converter: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{{go}} {go_type}",),
        pre_call=(
            f"c{{field}}, c{{field}}N := {converter}({{go}})",
            "defer freeArray(unsafe.Pointer(c{field}))",
        ),
        call_expr="c{field}, c{field}N",
        value_type=go_type,
    )


def _go_vector_out(c_type: str, go_type: str, decoder: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"var c{{field}} *{c_type}", "var c{field}N C.int"),
        call_expr="&c{field}, &c{field}N",
        post_call=(
            f"{{go}} := {decoder}(c{{field}}, c{{field}}N)",
            "gFreePointer(unsafe.Pointer(c{field}))",
        ),
        value_type=go_type,
        result_expr="{go}",
        zero_value="nil",
    )


GO_WRAPPER_RULES: dict[tuple[Category, Direction], MarshalRule] = {
    (Category.IMAGE, Direction.IN): _go_scalar_in("*C.VipsImage", "{go}"),
    (Category.IMAGE, Direction.OUT): MarshalRule(
        declaration=("var {go} *C.VipsImage",),
        call_expr="&{go}",
        value_type="*C.VipsImage",
        result_expr="{go}",
        zero_value="nil",
    ),
    (Category.BOOL, Direction.IN): _go_scalar_in("bool", "C.gboolean(boolToInt({go}))"),
    (Category.BOOL, Direction.OUT): _go_scalar_out("C.gboolean", "bool", "c{field} != 0", "false"),
    (Category.INT, Direction.IN): _go_scalar_in("int", "C.int({go})"),
    (Category.INT, Direction.OUT): _go_scalar_out("C.int", "int", "int(c{field})", "0"),
    (Category.DOUBLE, Direction.IN): _go_scalar_in("float64", "C.double({go})"),
    (Category.DOUBLE, Direction.OUT): _go_scalar_out(
        "C.double", "float64", "float64(c{field})", "0"
    ),
    (Category.ENUM, Direction.IN): _go_scalar_in("{enum}", "C.int({go})"),
    (Category.ENUM, Direction.OUT): _go_scalar_out("C.int", "{enum}", "{enum}(c{field})", "0"),
    (Category.STRING, Direction.IN): MarshalRule(
        declaration=("{go} string",),
        pre_call=("c{field} := C.CString({go})", "defer freeCString(c{field})"),
        call_expr="c{field}",
        value_type="string",
    ),
    (Category.STRING, Direction.OUT): MarshalRule(
        declaration=("var c{field} *C.char",),
        call_expr="&c{field}",
        post_call=(
            "{go} := C.GoString(c{field})",
            "gFreePointer(unsafe.Pointer(c{field}))",
        ),
        value_type="string",
        result_expr="{go}",
        zero_value='""',
    ),
    (Category.ARRAY_INT, Direction.IN): _go_array_in("[]int", "intArray"),
    (Category.ARRAY_INT, Direction.OUT): _go_vector_out("C.int", "[]int", "decodeIntVector"),
    (Category.ARRAY_DOUBLE, Direction.IN): _go_array_in("[]float64", "doubleArray"),
    (Category.ARRAY_DOUBLE, Direction.OUT): _go_vector_out(
        "C.double", "[]float64", "decodeDoubleVector"
    ),
    (Category.ARRAY_IMAGE, Direction.IN): _go_array_in("[]*C.VipsImage", "imageArray"),
    (Category.BLOB, Direction.IN): MarshalRule(
        declaration=("{go} []byte",),
        pre_call=("c{field}, c{field}N := bytesPointer({go})",),
        call_expr="c{field}, c{field}N",
        value_type="[]byte",
    ),
    (Category.BLOB, Direction.OUT): MarshalRule(
        declaration=("var c{field} *C.VipsBlob",),
        call_expr="&c{field}",
        post_call=("{go} := decodeBlob(c{field})",),
        value_type="[]byte",
        result_expr="{go}",
        zero_value="nil",
    ),
    (Category.INTERPOLATE, Direction.IN): _go_scalar_in("*C.VipsInterpolate", "{go}"),
    (Category.SOURCE, Direction.IN): _go_scalar_in("*C.VipsSource", "{go}"),
    (Category.TARGET, Direction.IN): _go_scalar_in("*C.VipsTarget", "{go}"),
}


# ===--- Go target: receiver layer ---=== #


def _passthrough_in() -> MarshalRule:
    return MarshalRule(declaration=("{go} {type}",), call_expr="{go}", value_type="{type}")


def _passthrough_out(zero: str) -> MarshalRule:
    return MarshalRule(value_type="{type}", result_expr="{go}", zero_value=zero)


def _handle_in(public_type: str, unwrap: str) -> MarshalRule:
    return MarshalRule(
        declaration=(f"{{go}} {public_type}",),
        call_expr=f"{unwrap}({{go}})",
        value_type=public_type,
    )


GO_RECEIVER_RULES: dict[tuple[Category, Direction], MarshalRule] = {
    (Category.IMAGE, Direction.IN): _handle_in("*Image", "imageHandle"),
    (Category.IMAGE, Direction.OUT): MarshalRule(
        value_type="*Image", result_expr="newImageRef({go})", zero_value="nil",
    ),
    (Category.ARRAY_IMAGE, Direction.IN): _handle_in("[]*Image", "imageHandles"),
    (Category.INTERPOLATE, Direction.IN): _handle_in("*Interpolate", "interpolateHandle"),
    (Category.SOURCE, Direction.IN): _handle_in("*Source", "sourceHandle"),
    (Category.TARGET, Direction.IN): _handle_in("*Target", "targetHandle"),
    (Category.BOOL, Direction.IN): _passthrough_in(),
    (Category.BOOL, Direction.OUT): _passthrough_out("false"),
    (Category.INT, Direction.IN): _passthrough_in(),
    (Category.INT, Direction.OUT): _passthrough_out("0"),
    (Category.DOUBLE, Direction.IN): _passthrough_in(),
    (Category.DOUBLE, Direction.OUT): _passthrough_out("0"),
    (Category.ENUM, Direction.IN): _passthrough_in(),
    (Category.ENUM, Direction.OUT): _passthrough_out("0"),
    (Category.STRING, Direction.IN): _passthrough_in(),
    (Category.STRING, Direction.OUT): _passthrough_out('""'),
    (Category.ARRAY_INT, Direction.IN): _passthrough_in(),
    (Category.ARRAY_INT, Direction.OUT): _passthrough_out("nil"),
    (Category.ARRAY_DOUBLE, Direction.IN): _passthrough_in(),
    (Category.ARRAY_DOUBLE, Direction.OUT): _passthrough_out("nil"),
    (Category.BLOB, Direction.IN): _passthrough_in(),
    (Category.BLOB, Direction.OUT): _passthrough_out("nil"),
}


GO_RESERVED_WORDS = frozenset({
    "break", "case", "chan", "const", "continue", "default", "defer", "else",
    "fallthrough", "for", "func", "go", "goto", "if", "import", "interface",
    "map", "package", "range", "return", "select", "struct", "switch", "type",
    "var",
    # locals and parameters introduced by the generated code
    "err", "r", "options",
})

C_RESERVED_WORDS = frozenset({
    "auto", "break", "case", "char", "const", "continue", "default", "do",
    "double", "else", "enum", "extern", "float", "for", "goto", "if", "inline",
    "int", "long", "register", "restrict", "return", "short", "signed",
    "sizeof", "static", "struct", "switch", "typedef", "union", "unsigned",
    "void", "volatile", "while",
    "operation", "result",
})


GO_TARGET = Target(
    name="go",
    tables={
        Layer.SHIM: C_SHIM_RULES,
        Layer.WRAPPER: GO_WRAPPER_RULES,
        Layer.RECEIVER: GO_RECEIVER_RULES,
    },
    reserved_words=GO_RESERVED_WORDS,
    foreign_reserved_words=C_RESERVED_WORDS,
)
