"""Code emission engine.

Turns the normalized IR into the files of a target package. Every operation
goes through the same states:

    CLASSIFIED -> ARGUMENTS_RESOLVED -> BODY_EMITTED -> WRITTEN

All operations reach ARGUMENTS_RESOLVED before any body is built, so a
missing marshaling rule aborts the run before a single file is written.
"""

import enum
import json
import logging
import math
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from vipsgen.codegen import CodeGen
from vipsgen.errors import EmissionError, MarshalingError
from vipsgen.ir import Argument, Category, EnumType, NormalizedIR, Operation
from vipsgen.marshal import Layer, MarshalRule, Target, argument_context
from vipsgen.templates import GENERATED_HEADER, TemplateLoader

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

GO_OUTPUT_FILES: tuple[str, ...] = ("vips.h", "vips.c", "vips.go", "image.go", "types.go")

DOC_URL = "https://www.libvips.org/API/current"

# Categories documented on a page other than "libvips-<category>".
DOC_PAGES = {"foreign": "VipsForeignSave"}


# ===--- Operation state machine ---=== #


class EmissionState(enum.Enum):
    CLASSIFIED = 1
    ARGUMENTS_RESOLVED = 2
    BODY_EMITTED = 3
    WRITTEN = 4


_NEXT_STATE = {
    EmissionState.CLASSIFIED: EmissionState.ARGUMENTS_RESOLVED,
    EmissionState.ARGUMENTS_RESOLVED: EmissionState.BODY_EMITTED,
    EmissionState.BODY_EMITTED: EmissionState.WRITTEN,
}


class ReceiverKind(enum.Enum):
    NONE = "none"
    METHOD = "method"  # first image input becomes the receiver
    CONSTRUCTOR = "constructor"  # New<Op>: produces images, consumes none


def receiver_kind(op: Operation) -> ReceiverKind:
    if op.needs_custom_wrapper:
        return ReceiverKind.NONE
    if op.receiver is not None:
        return ReceiverKind.METHOD
    if op.has_image_output and not op.has_image_input:
        return ReceiverKind.CONSTRUCTOR
    return ReceiverKind.NONE


@dataclass(frozen=True)
class ResolvedArgument:
    """An argument with its rule bound at every layer it crosses.

    Attributes:
        arg: The IR argument.
        shim: Bound C shim rule.
        wrapper: Bound low-level wrapper rule.
        receiver: Bound receiver rule, or None when the operation has no
            receiver layer.
    """

    arg: Argument
    shim: MarshalRule
    wrapper: MarshalRule
    receiver: MarshalRule | None


class OperationEmission:
    """One operation on its way through the emission states."""

    def __init__(self, operation: Operation):
        self.operation = operation
        self.state = EmissionState.CLASSIFIED
        self.arguments: tuple[ResolvedArgument, ...] = ()
        self.kind = receiver_kind(operation)
        self.sections: dict[str, list[str]] = {}

    def advance(self, state: EmissionState) -> None:
        if _NEXT_STATE.get(self.state) is not state:
            raise EmissionError(
                f"{self.operation.name}: cannot move from {self.state.name} to {state.name}"
            )
        self.state = state

    def require(self, state: EmissionState) -> None:
        if self.state is not state:
            raise EmissionError(
                f"{self.operation.name}: expected state {state.name}, found {self.state.name}"
            )

    def resolve(self, target: Target) -> None:
        """Bind every argument's rules; CLASSIFIED -> ARGUMENTS_RESOLVED.

        Raises:
            MarshalingError: A layer has no rule for an argument, or the
                shim rule of an optional output cannot tell whether the
                caller asked for it.
        """
        self.require(EmissionState.CLASSIFIED)
        resolved = []
        for arg in self.operation.arguments:
            receiver = None
            if self.kind is not ReceiverKind.NONE:
                receiver = target.bound_rule(Layer.RECEIVER, arg)
            shim = target.bound_rule(Layer.SHIM, arg)
            if arg.is_output and not arg.required and not shim.guard:
                raise MarshalingError(
                    f"{self.operation.name}: optional output {arg.name!r} "
                    f"({arg.category.value}) has no shim guard"
                )
            resolved.append(ResolvedArgument(
                arg=arg,
                shim=shim,
                wrapper=target.bound_rule(Layer.WRAPPER, arg),
                receiver=receiver,
            ))
        self.arguments = tuple(resolved)
        self.advance(EmissionState.ARGUMENTS_RESOLVED)

    # Buckets over the resolved arguments, in signature order.

    def _bucket(self, members: Sequence[Argument]) -> list[ResolvedArgument]:
        wanted = {id(arg) for arg in members}
        return [item for item in self.arguments if id(item.arg) in wanted]

    @property
    def required_inputs(self) -> list[ResolvedArgument]:
        return self._bucket(self.operation.required_inputs)

    @property
    def optional_inputs(self) -> list[ResolvedArgument]:
        return self._bucket(self.operation.optional_inputs)

    @property
    def outputs(self) -> list[ResolvedArgument]:
        return self._bucket(self.operation.outputs)

    @property
    def optional_outputs(self) -> list[ResolvedArgument]:
        return self._bucket(self.operation.optional_outputs)


# ===--- Write result types ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single output file.

    Attributes:
        filename: Filename written, e.g. "vips.go".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
        static: True for files copied from the static directory.
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int
    static: bool = False


@dataclass(frozen=True)
class PackageWriteResult:
    """Result of writing the complete generated package.

    Attributes:
        output_dir: Directory all files were written to.
        files: One FileWriteResult per file, generated files first in
            GO_OUTPUT_FILES order, then static files sorted by name.
    """

    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        return sum(f.line_count for f in self.files)


# ===--- Go literals ---=== #


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""


def doc_url(name: str, category: str) -> str:
    """Link to the libvips reference entry of an operation.

    >>> doc_url("extract_area", "conversion")
    'https://www.libvips.org/API/current/libvips-conversion.html#vips-extract-area'
    """
    page = DOC_PAGES.get(category, f"libvips-{category}")
    return f"{DOC_URL}/{page}.html#vips-{name.replace('_', '-')}"


def _doc_comment(gen: CodeGen, name: str, op: Operation) -> None:
    description = _first_line(op.description)
    if description:
        gen.comment(f"{name} {description}")
    if op.category:
        gen.comment(f"See: {doc_url(op.name, op.category)}")


def go_default_literal(arg: Argument, enums: Mapping[str, EnumType]) -> str:
    """Go literal for an optional input's default, or "" for the zero value."""
    value = arg.default
    if value is None or value == "":
        return ""
    if arg.category is Category.BOOL:
        return "true" if value else ""
    if arg.category is Category.INT:
        return str(int(value)) if int(value) != 0 else ""
    if arg.category is Category.DOUBLE:
        number = float(value)
        if number == 0 or not math.isfinite(number):
            return ""
        return repr(number)
    if arg.category is Category.ENUM:
        enum_type = enums.get(arg.enum_name)
        if enum_type is None:
            return ""
        try:
            return arg.enum_name + enum_type.name_for(int(value))
        except KeyError:
            return f"{arg.enum_name}({int(value)})"
    if arg.category is Category.STRING:
        return json.dumps(str(value))
    return ""


def _join_results(values: Sequence[str], error: str) -> str:
    return ", ".join([*values, error])


def _result_list(types: Sequence[str]) -> str:
    if not types:
        return "error"
    return f"({', '.join([*types, 'error'])})"


# ===--- Go target emitter ---=== #


class GoEmitter:
    """Builds the cgo package for the Go target from resolved operations."""

    def __init__(self, ir: NormalizedIR, target: Target, package: str = "vips"):
        self._ir = ir
        self._target = target
        self._package = package
        self._enums = {enum_type.generated_name: enum_type for enum_type in ir.enums}

    # ===--- Per-operation sections ---=== #

    def emit_operation(self, emission: OperationEmission) -> None:
        """Build every section of one operation; ARGUMENTS_RESOLVED -> BODY_EMITTED."""
        emission.require(EmissionState.ARGUMENTS_RESOLVED)
        op = emission.operation
        with_options = op.has_options

        header = [self._shim_prototype(emission, False) + ";"]
        source = CodeGen()
        self._shim_function(source, emission, False)
        wrapper = CodeGen()
        self._wrapper_function(wrapper, emission, False)
        if with_options:
            header.append(self._shim_prototype(emission, True) + ";")
            source.line()
            self._shim_function(source, emission, True)
            wrapper.line()
            self._wrapper_function(wrapper, emission, True)

        receiver = CodeGen()
        if emission.kind is not ReceiverKind.NONE:
            if with_options:
                self._options_struct(receiver, emission)
                receiver.line()
            self._receiver_function(receiver, emission)
        elif op.needs_custom_wrapper:
            logger.debug("%s: receiver method left to a hand-written wrapper", op.name)

        emission.sections = {
            "vips.h": header,
            "vips.c": source.output().splitlines(),
            "vips.go": wrapper.output().splitlines(),
            "image.go": receiver.output().splitlines(),
        }
        emission.advance(EmissionState.BODY_EMITTED)

    # C shim

    @staticmethod
    def shim_name(op: Operation, with_options: bool) -> str:
        return f"vipsgen_{op.name}" + ("_with_options" if with_options else "")

    def _shim_params(self, emission: OperationEmission, with_options: bool) -> list[ResolvedArgument]:
        inputs = emission.required_inputs
        if with_options:
            return inputs + emission.optional_inputs + emission.outputs + emission.optional_outputs
        return inputs + emission.outputs

    def _shim_declarator(self, emission: OperationEmission, with_options: bool) -> str:
        params = [
            decl for item in self._shim_params(emission, with_options)
            for decl in item.shim.declaration
        ]
        name = self.shim_name(emission.operation, with_options)
        return f"{name}({', '.join(params) or 'void'})"

    def _shim_prototype(self, emission: OperationEmission, with_options: bool) -> str:
        return f"int {self._shim_declarator(emission, with_options)}"

    def _shim_function(self, gen: CodeGen, emission: OperationEmission, with_options: bool) -> None:
        op = emission.operation
        params = self._shim_params(emission, with_options)
        inputs = [item for item in params if not item.arg.is_output]
        outputs = [item for item in params if item.arg.is_output and item.arg.required]
        optional_outputs = [item for item in params if item.arg.is_output and not item.arg.required]

        gen.line("int")
        gen.line(self._shim_declarator(emission, with_options))
        with gen.block("{") as body:
            body.line(f'VipsOperation *operation = vips_operation_new("{op.name}");')
            body.line("int result = 1;")
            for item in params:
                body.lines(item.shim.pre_call)
            body.line()
            with body.block("if (!operation)", footer=""):
                body.line("goto cleanup;")

            setters = [self._shim_setter(item) for item in inputs]
            setters.append("vipsgen_operation_build(&operation)")
            body.line(f"if ({setters[0]}" + (" ||" if len(setters) > 1 else ")"))
            body.indent()
            for index, setter in enumerate(setters[1:], start=2):
                body.line(setter + (" ||" if index < len(setters) else ")"))
            body.line("goto cleanup;")
            body.dedent()

            for item in outputs:
                body.line(f'g_object_get(operation, "{item.arg.name}", {item.shim.call_expr}, NULL);')
            for item in outputs:
                body.lines(item.shim.post_call)
            # A NULL out-pointer means the caller did not ask for this value.
            for item in optional_outputs:
                with body.block(f"if ({item.shim.guard}) {{"):
                    body.line(f'g_object_get(operation, "{item.arg.name}", {item.shim.call_expr}, NULL);')
                    body.lines(item.shim.post_call)
            body.line("result = 0;")
            body.line()
            body.dedent()
            body.line("cleanup:")
            body.indent()
            for item in inputs:
                body.lines(item.shim.post_call)
            body.line("vipsgen_operation_free(operation);")
            body.line("return result;")

    @staticmethod
    def _shim_setter(item: ResolvedArgument) -> str:
        arg = item.arg
        if arg.is_options_string:
            setter = f"vips_object_set_from_string(VIPS_OBJECT(operation), {item.shim.call_expr})"
        else:
            setter = (
                f'vips_object_set(VIPS_OBJECT(operation), "{arg.name}", '
                f"{item.shim.call_expr}, NULL)"
            )
        if not arg.required and item.shim.guard:
            return f"({item.shim.guard} && {setter})"
        return setter

    # Low-level Go wrapper

    @staticmethod
    def wrapper_name(op: Operation, with_options: bool) -> str:
        return f"vipsgen{op.identifier}" + ("WithOptions" if with_options else "")

    def _wrapper_function(self, gen: CodeGen, emission: OperationEmission, with_options: bool) -> None:
        op = emission.operation
        inputs = emission.required_inputs + (emission.optional_inputs if with_options else [])
        outputs = emission.outputs + (emission.optional_outputs if with_options else [])
        params = ", ".join(decl for item in inputs for decl in item.wrapper.declaration)
        result_types = [item.wrapper.value_type for item in outputs]
        zeros = [item.wrapper.zero_value for item in outputs]

        name = self.wrapper_name(op, with_options)
        _doc_comment(gen, name, op)
        with gen.block(f"func {name}({params}) {_result_list(result_types)} {{") as body:
            for item in inputs:
                body.lines(item.wrapper.pre_call)
            for item in outputs:
                body.lines(item.wrapper.declaration)
            call_args = ", ".join(
                item.wrapper.call_expr for item in inputs + outputs if item.wrapper.call_expr
            )
            shim = self.shim_name(op, with_options)
            with body.block(f"if err := C.{shim}({call_args}); err != 0 {{"):
                body.line(f"return {_join_results(zeros, 'handleVipsError()')}")
            for item in outputs:
                body.lines(item.wrapper.post_call)
            body.line(f"return {_join_results([i.wrapper.result_expr for i in outputs], 'nil')}")

    # Receiver layer

    @staticmethod
    def options_name(op: Operation) -> str:
        return f"{op.identifier}Options"

    def _options_struct(self, gen: CodeGen, emission: OperationEmission) -> None:
        op = emission.operation
        name = self.options_name(op)
        gen.comment(f"{name} optional arguments for {op.identifier}")
        with gen.block(f"type {name} struct {{") as body:
            for item in emission.optional_inputs:
                description = _first_line(item.arg.description)
                if description:
                    body.comment(f"{item.arg.field_name} {description}")
                body.line(f"{item.arg.field_name} {item.receiver.value_type}")
            for item in emission.optional_outputs:
                description = _first_line(item.arg.description) or "set by the call"
                body.comment(f"{item.arg.field_name} {description} (output)")
                body.line(f"{item.arg.field_name} {item.receiver.value_type}")
        gen.line()
        gen.comment(f"Default{name} creates the default {op.name} optional arguments")
        with gen.block(f"func Default{name}() *{name} {{") as body:
            defaults = [
                (item.arg.field_name, go_default_literal(item.arg, self._enums))
                for item in emission.optional_inputs
            ]
            defaults = [(field, literal) for field, literal in defaults if literal]
            if not defaults:
                body.line(f"return &{name}{{}}")
            else:
                with body.block(f"return &{name}{{"):
                    for field, literal in defaults:
                        body.line(f"{field}: {literal},")

    def _receiver_call_args(self, emission: OperationEmission, with_options: bool) -> str:
        receiver_arg = emission.operation.receiver
        args = []
        for item in emission.required_inputs:
            if emission.kind is ReceiverKind.METHOD and item.arg is receiver_arg:
                args.append("r.image")
            else:
                args.append(item.receiver.call_expr)
        if with_options:
            # Optional values come from the options struct, not parameters.
            for item in emission.optional_inputs:
                arg = item.arg
                context = {**argument_context(arg), "go": f"options.{arg.field_name}"}
                rule = self._target.rule(Layer.RECEIVER, arg.category, arg.direction)
                args.append(rule.bind(context).call_expr)
        return ", ".join(args)

    def _receiver_function(self, gen: CodeGen, emission: OperationEmission) -> None:
        op = emission.operation
        with_options = op.has_options
        params = [
            decl
            for item in emission.required_inputs
            if not (emission.kind is ReceiverKind.METHOD and item.arg is op.receiver)
            for decl in item.receiver.declaration
        ]
        if with_options:
            params.append(f"options *{self.options_name(op)}")
        outputs = emission.outputs
        result_types = [item.receiver.value_type for item in outputs]

        if emission.kind is ReceiverKind.METHOD:
            name = op.identifier
            signature = f"func (r *Image) {name}({', '.join(params)}) {_result_list(result_types)} {{"
        else:
            name = f"New{op.identifier}"
            signature = f"func {name}({', '.join(params)}) {_result_list(result_types)} {{"

        _doc_comment(gen, name, op)
        with gen.block(signature) as body:
            if with_options:
                with body.block("if options != nil {"):
                    self._receiver_call(body, emission, True)
            self._receiver_call(body, emission, False)

    def _receiver_call(self, gen: CodeGen, emission: OperationEmission, with_options: bool) -> None:
        op = emission.operation
        call = f"{self.wrapper_name(op, with_options)}({self._receiver_call_args(emission, with_options)})"
        outputs = emission.outputs
        fetched = emission.optional_outputs if with_options else []
        if not outputs and not fetched:
            gen.line(f"return {call}")
            return
        names = [item.arg.identifier for item in outputs + fetched]
        gen.line(f"{', '.join(names)}, err := {call}")
        with gen.block("if err != nil {"):
            gen.line(f"return {_join_results([i.receiver.zero_value for i in outputs], 'err')}")
        for item in fetched:
            gen.line(f"options.{item.arg.field_name} = {item.receiver.result_expr}")
        gen.line(f"return {_join_results([i.receiver.result_expr for i in outputs], 'nil')}")

    # ===--- File assembly ---=== #

    def types_body(self) -> str:
        gen = CodeGen()
        for enum_type in self._ir.enums:
            kind = "flags" if enum_type.is_flags else "enum"
            gen.comment(f"{enum_type.generated_name} is the libvips {enum_type.native_name} {kind}")
            gen.line(f"type {enum_type.generated_name} int")
            gen.line()
            if enum_type.values:
                gen.comment(f"{enum_type.generated_name} values")
                with gen.block("const (", footer=")"):
                    for value in enum_type.values:
                        gen.line(
                            f"{enum_type.generated_name}{value.generated_name} "
                            f"{enum_type.generated_name} = {value.value}"
                        )
                gen.line()

        gen.comment("ImageType is an image format known to libvips")
        gen.line("type ImageType int")
        gen.line()
        gen.comment("ImageType values")
        with gen.block("const (", footer=")"):
            for info in self._ir.image_formats:
                gen.line(f"{info.symbol} ImageType = {info.order}")
        gen.line()
        gen.comment("ImageMimeTypes maps image types to their MIME type")
        with gen.block("var ImageMimeTypes = map[ImageType]string{"):
            for info in self._ir.image_formats:
                if info.mime_type:
                    gen.line(f'{info.symbol}: "{info.mime_type}",')
        return gen.output()

    def file_data(self, filename: str, body_lines: list[str]) -> dict[str, str]:
        body = "\n".join(body_lines).rstrip("\n")
        imports = ""
        if filename == "vips.go":
            preamble = ["", "// #cgo pkg-config: vips", '// #include "vips.h"', 'import "C"']
            if "unsafe." in body:
                preamble += ["", 'import "unsafe"']
            imports = "\n".join(preamble) + "\n"
        return {
            "header": GENERATED_HEADER,
            "package": self._package,
            "imports": imports,
            "body": body,
            "filename": filename,
        }

    def assemble(self, emissions: Sequence[OperationEmission], loader: TemplateLoader) -> dict[str, str]:
        """Render every output file. Pure: nothing is written."""
        bodies: dict[str, list[str]] = {name: [] for name in GO_OUTPUT_FILES}
        for emission in emissions:
            emission.require(EmissionState.BODY_EMITTED)
            for filename, lines in emission.sections.items():
                if not lines:
                    continue
                if bodies[filename]:
                    bodies[filename].append("")
                bodies[filename].extend(lines)
        bodies["types.go"] = self.types_body().splitlines()

        rendered = {}
        for filename in GO_OUTPUT_FILES:
            text = loader.render(filename, self.file_data(filename, bodies[filename]))
            rendered[filename] = text if text.endswith("\n") else text + "\n"
        return rendered


EMITTERS = {"go": GoEmitter}


# ===--- Writer I/O functions ---=== #


def write_file(output_dir: Path, filename: str, content: str) -> FileWriteResult:
    """Write one generated file; failures become EmissionError."""
    path = Path(output_dir) / filename
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as err:
        raise EmissionError(f"cannot write: {err}", filename=filename) from err
    return FileWriteResult(
        filename=filename,
        path=path.resolve(),
        line_count=content.count("\n"),
        byte_count=len(content.encode("utf-8")),
    )


def copy_static_files(static_dir: Path, output_dir: Path) -> list[FileWriteResult]:
    """Copy every regular file of static_dir verbatim, sorted by name."""
    results = []
    for source in sorted(Path(static_dir).iterdir()):
        if not source.is_file() or source.name.startswith((".", "__")):
            continue
        destination = Path(output_dir) / source.name
        try:
            shutil.copyfile(source, destination)
        except OSError as err:
            raise EmissionError(f"cannot copy {source}: {err}", filename=source.name) from err
        data = destination.read_bytes()
        results.append(FileWriteResult(
            filename=source.name,
            path=destination.resolve(),
            line_count=data.count(b"\n"),
            byte_count=len(data),
            static=True,
        ))
    return results


def emit(
    ir: NormalizedIR,
    target: Target,
    loader: TemplateLoader,
    output_dir: Path,
    static_dir: Path | None = None,
    package: str = "vips",
) -> PackageWriteResult:
    """Emit the package for target into output_dir.

    Args:
        ir: Normalized operations, enums and image formats.
        target: Rule tables and reserved words of the output language.
        loader: Source of the file frames.
        output_dir: Created if absent.
        static_dir: Directory of hand-written files copied verbatim. None
            uses the files shipped with vipsgen.
        package: Go package name.

    Returns:
        PackageWriteResult describing every file written.

    Raises:
        MarshalingError: An argument has no rule at some layer. Raised
            before anything is written.
        EmissionError: A frame failed to render or a file failed to write.
    """
    emitter_class = EMITTERS.get(target.name)
    if emitter_class is None:
        raise EmissionError(f"no emitter for target {target.name!r}")
    emitter = emitter_class(ir, target, package)

    emissions = [OperationEmission(op) for op in ir.operations]
    for emission in emissions:
        emission.resolve(target)
    for emission in emissions:
        emitter.emit_operation(emission)
    rendered = emitter.assemble(emissions, loader)

    output_dir = Path(output_dir)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise EmissionError(f"cannot create {output_dir}: {err}") from err
    files = [write_file(output_dir, name, text) for name, text in rendered.items()]
    files.extend(copy_static_files(static_dir or STATIC_DIR, output_dir))
    for emission in emissions:
        emission.advance(EmissionState.WRITTEN)
    logger.info("emitted %d operations into %s", len(emissions), output_dir)
    return PackageWriteResult(output_dir=output_dir, files=tuple(files))
