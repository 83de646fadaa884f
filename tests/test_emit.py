from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import avg_op, black_op, embed_op, in_arg, max_op, opt_arg, out_arg
from vipsgen.catalog import IntrospectionSession, RawOperation, SnapshotCatalog
from vipsgen.emit import (
    GO_OUTPUT_FILES,
    EmissionState,
    GoEmitter,
    OperationEmission,
    ReceiverKind,
    copy_static_files,
    doc_url,
    emit,
    go_default_literal,
    receiver_kind,
)
from vipsgen.errors import EmissionError, MarshalingError
from vipsgen.ir import Category, Direction, NormalizedIR, OperationConfig
from vipsgen.marshal import (
    C_SHIM_RULES,
    GO_TARGET,
    GO_WRAPPER_RULES,
    Layer,
    MarshalRule,
    Target,
)
from vipsgen.normalize import Normalizer
from vipsgen.templates import BuiltinTemplateLoader, DirectoryTemplateLoader

STATIC_FILES = ("helpers.go", "vipsgen.c", "vipsgen.h")

JPEGLOAD_OVERRIDES = {
    "jpegload": OperationConfig(needs_custom_wrapper=True, options_param="option_string"),
}


def _jpegload_op() -> RawOperation:
    return RawOperation(
        name="jpegload",
        description="load jpeg from file",
        arguments=(
            in_arg("filename", "gchararray"),
            out_arg("out", "VipsImage"),
            opt_arg("shrink", "gint", default=1),
        ),
    )


def _build_ir(
    catalog: SnapshotCatalog,
    overrides: dict[str, OperationConfig] | None = None,
    exclusions: frozenset[str] = frozenset(),
) -> NormalizedIR:
    normalizer = Normalizer(catalog, IntrospectionSession())
    return normalizer.normalize(catalog.describe_all(), overrides or {}, exclusions)


def _emit(ir: NormalizedIR, output_dir: Path, **kwargs: object):
    return emit(ir, GO_TARGET, BuiltinTemplateLoader(), output_dir, **kwargs)


def _read(output_dir: Path, filename: str) -> str:
    return (output_dir / filename).read_text(encoding="utf-8")


def _all_text(output_dir: Path) -> str:
    return "\n".join(_read(output_dir, name) for name in GO_OUTPUT_FILES)


# ===--- Package shape ---=== #


def test_t_01_emit_writes_generated_then_static_files(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    output_dir = tmp_path / "nested" / "vips"

    result = _emit(_build_ir(make_catalog()), output_dir)

    assert [f.filename for f in result.files] == [*GO_OUTPUT_FILES, *STATIC_FILES]
    assert [f.static for f in result.files] == [False] * 5 + [True] * 3
    for file_result in result.files:
        assert file_result.path.is_file()
        data = file_result.path.read_bytes()
        assert file_result.line_count == data.count(b"\n")
        assert file_result.byte_count == len(data)
    assert result.total_lines == sum(f.line_count for f in result.files)


def test_t_02_generated_files_carry_header_and_package(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path, package="imaging")

    for name in GO_OUTPUT_FILES:
        text = _read(tmp_path, name)
        assert text.startswith("// Code generated by vipsgen. DO NOT EDIT.\n")
        assert text.endswith("\n")
    for name in ("vips.go", "image.go", "types.go"):
        assert "\npackage imaging\n" in _read(tmp_path, name)
    vips_go = _read(tmp_path, "vips.go")
    assert '// #include "vips.h"\nimport "C"\n' in vips_go
    assert 'import "unsafe"' in vips_go


def test_t_03_emission_is_byte_identical_across_runs(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    first = _emit(_build_ir(make_catalog()), tmp_path / "first")
    second = _emit(_build_ir(make_catalog()), tmp_path / "second")

    for a, b in zip(first.files, second.files):
        assert a.filename == b.filename
        assert a.path.read_bytes() == b.path.read_bytes()


# ===--- Operation sections ---=== #


def test_t_04_embed_shim_prototypes(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    header = _read(tmp_path, "vips.h")

    assert (
        "int vipsgen_embed(VipsImage* in, int x, int y, int width, int height, "
        "VipsImage** out);"
    ) in header
    assert (
        "int vipsgen_embed_with_options(VipsImage* in, int x, int y, int width, int height, "
        "int extend, double* background, int background_n, VipsImage** out);"
    ) in header


def test_t_05_embed_shim_body_sets_builds_and_cleans_up(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    source = _read(tmp_path, "vips.c")

    assert 'VipsOperation *operation = vips_operation_new("embed");' in source
    assert '\tif (vips_object_set(VIPS_OBJECT(operation), "in", in, NULL) ||\n' in source
    assert "\t\tvipsgen_operation_build(&operation))\n\t\tgoto cleanup;\n" in source
    assert '\tg_object_get(operation, "out", out, NULL);\n' in source
    assert (
        "VipsArrayDouble *background_array = vips_array_double_new(background, background_n);"
    ) in source
    assert (
        '(background_n > 0 && vips_object_set(VIPS_OBJECT(operation), "background", '
        "background_array, NULL)) ||"
    ) in source
    assert "cleanup:\n\tvips_area_unref(VIPS_AREA(background_array));\n" in source
    assert source.count("vipsgen_operation_free(operation);") == source.count(
        "vips_operation_new("
    )


def test_t_06_embed_wrapper_and_receiver(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    wrappers = _read(tmp_path, "vips.go")
    image = _read(tmp_path, "image.go")

    assert (
        "func vipsgenEmbed(in *C.VipsImage, x int, y int, width int, height int) "
        "(*C.VipsImage, error) {"
    ) in wrappers
    assert (
        "\tif err := C.vipsgen_embed(in, C.int(x), C.int(y), C.int(width), C.int(height), "
        "&out); err != 0 {\n\t\treturn nil, handleVipsError()\n\t}\n"
    ) in wrappers
    assert (
        "func (r *Image) Embed(x int, y int, width int, height int, options *EmbedOptions) "
        "(*Image, error) {"
    ) in image
    assert (
        "\t\tout, err := vipsgenEmbedWithOptions(r.image, x, y, width, height, "
        "options.Extend, options.Background)\n"
    ) in image
    assert "\treturn newImageRef(out), nil\n" in image


def test_t_07_options_struct_and_defaults(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    image = _read(tmp_path, "image.go")

    assert "type EmbedOptions struct {\n" in image
    assert "\t// Extend How to generate the extra pixels\n\tExtend Extend\n" in image
    assert "\tBackground []float64\n" in image
    assert (
        "func DefaultEmbedOptions() *EmbedOptions {\n"
        "\treturn &EmbedOptions{\n"
        "\t\tExtend: ExtendBlack,\n"
        "\t}\n"
        "}\n"
    ) in image
    assert "\t\tBands: 1,\n" in image


def test_t_08_constructor_for_operations_without_image_input(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    image = _read(tmp_path, "image.go")

    assert (
        "func NewBlack(width int, height int, options *BlackOptions) (*Image, error) {"
    ) in image
    assert "out, err := vipsgenBlack(width, height)" in image


def test_t_09_scalar_and_vector_outputs(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    wrappers = _read(tmp_path, "vips.go")
    image = _read(tmp_path, "image.go")
    source = _read(tmp_path, "vips.c")

    assert "func vipsgenAvg(in *C.VipsImage) (float64, error) {" in wrappers
    assert "\tvar cOut C.double\n" in wrappers
    assert "\treturn float64(cOut), nil\n" in wrappers
    assert "func (r *Image) Avg() (float64, error) {" in image

    assert "func vipsgenGetpoint(in *C.VipsImage, x int, y int) ([]float64, error) {" in wrappers
    assert "\toutArray := decodeDoubleVector(cOutArray, cOutArrayN)\n" in wrappers
    assert "\tgFreePointer(unsafe.Pointer(cOutArray))\n" in wrappers
    assert "func (r *Image) Getpoint(x int, y int) ([]float64, error) {" in image
    assert "VipsArrayDouble *out_array_array = NULL;" in source
    assert '\tg_object_get(operation, "out_array", &out_array_array, NULL);\n' in source
    assert "*out_array = vipsgen_take_double_array(out_array_array, out_array_n);" in source


def test_t_10_types_file_lists_enums_and_image_types(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    types = _read(tmp_path, "types.go")

    assert "type Extend int\n" in types
    assert "\tExtendBlack Extend = 0\n" in types
    assert "\tExtendBackground Extend = 5\n" in types
    assert "ExtendLast" not in types
    assert "\tImageTypeUnknown ImageType = 0\n" in types
    assert "var ImageMimeTypes = map[ImageType]string{\n}" in types


def test_t_11_image_type_table_for_loaders(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    heifload = RawOperation(
        name="heifload",
        description="load a HEIF image",
        arguments=(in_arg("filename", "gchararray"), out_arg("out", "VipsImage")),
    )
    _emit(_build_ir(make_catalog([heifload, _jpegload_op()]), JPEGLOAD_OVERRIDES), tmp_path)
    types = _read(tmp_path, "types.go")

    assert (
        "\tImageTypeUnknown ImageType = 0\n"
        "\tImageTypeJpeg ImageType = 1\n"
        "\tImageTypeHeif ImageType = 2\n"
        "\tImageTypeAvif ImageType = 3\n"
    ) in types
    assert '\tImageTypeAvif: "image/avif",\n' in types


def test_t_12_custom_wrapper_keeps_low_level_wrapper_only(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog([_jpegload_op()]), JPEGLOAD_OVERRIDES), tmp_path)
    wrappers = _read(tmp_path, "vips.go")
    source = _read(tmp_path, "vips.c")

    assert (
        "func vipsgenJpegloadWithOptions(filename string, shrink int, optionString string) "
        "(*C.VipsImage, error) {"
    ) in wrappers
    assert "vips_object_set_from_string(VIPS_OBJECT(operation), option_string)" in source
    assert "Jpegload" not in _read(tmp_path, "image.go")


def test_t_13_excluded_and_skipped_operations_are_absent(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    ir = _build_ir(
        make_catalog(),
        overrides={"black": OperationConfig(skip_generation=True)},
        exclusions=frozenset({"avg"}),
    )
    _emit(ir, tmp_path)
    text = _all_text(tmp_path)

    for absent in ("vipsgen_avg", "vipsgenAvg", ") Avg(", "vipsgen_black", "NewBlack"):
        assert absent not in text
    assert "vipsgen_embed" in text


# ===--- Failure handling ---=== #


def test_t_14_missing_rule_aborts_before_anything_is_written(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    bandsplit = RawOperation(
        name="bandsplit",
        description="split an n-band image into n separate images",
        arguments=(in_arg("in", "VipsImage"), out_arg("out", "VipsArrayImage")),
    )
    ir = _build_ir(make_catalog([avg_op(), bandsplit]))
    output_dir = tmp_path / "out"

    with pytest.raises(MarshalingError, match="array_image out"):
        _emit(ir, output_dir)

    assert not output_dir.exists()


def test_t_15_target_with_trimmed_table_fails_on_first_missing_rule(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    wrapper_rules = {
        key: rule for key, rule in GO_WRAPPER_RULES.items()
        if key[0] is not Category.DOUBLE
    }
    trimmed = Target(
        name="go",
        tables={**GO_TARGET.tables, Layer.WRAPPER: wrapper_rules},
        reserved_words=GO_TARGET.reserved_words,
        foreign_reserved_words=GO_TARGET.foreign_reserved_words,
    )
    ir = _build_ir(make_catalog([embed_op(), avg_op()]))
    tmp_path.joinpath("out").mkdir()

    with pytest.raises(MarshalingError, match="no wrapper rule for double out"):
        emit(ir, trimmed, BuiltinTemplateLoader(), tmp_path / "out")

    assert list((tmp_path / "out").iterdir()) == []


def test_t_16_unknown_target_has_no_emitter(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    other = Target(
        name="rust",
        tables=GO_TARGET.tables,
        reserved_words=frozenset(),
        foreign_reserved_words=frozenset(),
    )

    with pytest.raises(EmissionError, match="no emitter for target 'rust'"):
        emit(_build_ir(make_catalog()), other, BuiltinTemplateLoader(), tmp_path)


def test_t_17_states_advance_in_order_only(
    make_catalog: Callable[..., SnapshotCatalog],
) -> None:
    ir = _build_ir(make_catalog([embed_op()]))
    emission = OperationEmission(ir.operation("embed"))
    emitter = GoEmitter(ir, GO_TARGET)

    with pytest.raises(EmissionError, match="cannot move from CLASSIFIED to BODY_EMITTED"):
        emission.advance(EmissionState.BODY_EMITTED)
    with pytest.raises(EmissionError, match="expected state ARGUMENTS_RESOLVED"):
        emitter.emit_operation(emission)

    emission.resolve(GO_TARGET)
    assert emission.state is EmissionState.ARGUMENTS_RESOLVED
    with pytest.raises(EmissionError, match="expected state CLASSIFIED"):
        emission.resolve(GO_TARGET)
    with pytest.raises(EmissionError, match="expected state BODY_EMITTED"):
        emitter.assemble([emission], BuiltinTemplateLoader())

    emitter.emit_operation(emission)
    assert emission.state is EmissionState.BODY_EMITTED
    assert set(emission.sections) == {"vips.h", "vips.c", "vips.go", "image.go"}


def test_t_18_emit_marks_every_operation_written(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    ir = _build_ir(make_catalog([embed_op()]))
    emission = OperationEmission(ir.operation("embed"))
    emission.resolve(GO_TARGET)
    GoEmitter(ir, GO_TARGET).emit_operation(emission)
    emission.advance(EmissionState.WRITTEN)

    with pytest.raises(EmissionError, match="cannot move from WRITTEN"):
        emission.advance(EmissionState.WRITTEN)


# ===--- Receivers and literals ---=== #


def test_t_19_receiver_kinds(make_catalog: Callable[..., SnapshotCatalog]) -> None:
    stats = RawOperation(
        name="sum_values",
        description="",
        arguments=(in_arg("values", "VipsArrayDouble"), out_arg("out", "gdouble")),
    )
    ir = _build_ir(
        make_catalog([avg_op(), black_op(), stats, _jpegload_op()]), JPEGLOAD_OVERRIDES
    )

    assert receiver_kind(ir.operation("avg")) is ReceiverKind.METHOD
    assert receiver_kind(ir.operation("black")) is ReceiverKind.CONSTRUCTOR
    assert receiver_kind(ir.operation("sum_values")) is ReceiverKind.NONE
    assert receiver_kind(ir.operation("jpegload")) is ReceiverKind.NONE


def test_t_20_go_default_literals(make_catalog: Callable[..., SnapshotCatalog]) -> None:
    op = RawOperation(
        name="defaults",
        description="",
        arguments=(
            out_arg("out", "VipsImage"),
            opt_arg("flag", "gboolean", default=True),
            opt_arg("off", "gboolean", default=False),
            opt_arg("scale", "gdouble", default=0.5),
            opt_arg("huge", "gdouble", default=float("inf")),
            opt_arg("name", "gchararray", default='a "b"'),
            opt_arg("extend", "VipsExtend", fundamental="enum", default=9),
            opt_arg("count", "gint", default=0),
        ),
    )
    ir = _build_ir(make_catalog([op]))
    enums = {e.generated_name: e for e in ir.enums}
    literals = {
        arg.name: go_default_literal(arg, enums)
        for arg in ir.operation("defaults").optional_inputs
    }

    assert literals == {
        "flag": "true",
        "off": "",
        "scale": "0.5",
        "huge": "",
        "name": '"a \\"b\\""',
        "extend": "Extend(9)",
        "count": "",
    }


# ===--- Frames and static files ---=== #


def test_t_21_directory_template_overrides_one_frame(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "types.go.tmpl").write_text(
        "$header\n\npackage $package\n\n// frame for $filename\n$body\n", encoding="utf-8"
    )
    loader = DirectoryTemplateLoader(templates, fallback=BuiltinTemplateLoader())

    emit(_build_ir(make_catalog()), GO_TARGET, loader, tmp_path / "out")

    assert "// frame for types.go\n" in _read(tmp_path / "out", "types.go")
    assert "// frame for" not in _read(tmp_path / "out", "vips.go")


def test_t_22_frame_with_unknown_placeholder_is_an_emission_error(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "image.go.tmpl").write_text("$header\n$missing\n", encoding="utf-8")
    loader = DirectoryTemplateLoader(templates, fallback=BuiltinTemplateLoader())

    with pytest.raises(EmissionError) as exc_info:
        emit(_build_ir(make_catalog()), GO_TARGET, loader, tmp_path / "out")

    assert exc_info.value.template == "image.go"
    assert not (tmp_path / "out").exists()


def test_t_23_copy_static_files_skips_hidden_and_dunder(tmp_path: Path) -> None:
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "extra.go").write_text("package vips\n", encoding="utf-8")
    (static_dir / ".keep").write_text("", encoding="utf-8")
    (static_dir / "__init__.py").write_text("", encoding="utf-8")
    (static_dir / "sub").mkdir()
    output_dir = tmp_path / "out"
    output_dir.mkdir()

    results = copy_static_files(static_dir, output_dir)

    assert [r.filename for r in results] == ["extra.go"]
    assert results[0].static
    assert results[0].line_count == 1
    assert (output_dir / "extra.go").read_text(encoding="utf-8") == "package vips\n"


def test_t_24_custom_static_dir_replaces_packaged_files(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "support.go").write_text("package imaging\n", encoding="utf-8")

    result = _emit(_build_ir(make_catalog()), tmp_path / "out", static_dir=static_dir)

    assert [f.filename for f in result.files if f.static] == ["support.go"]
    assert not (tmp_path / "out" / "helpers.go").exists()


# ===--- Optional outputs and doc links ---=== #


def test_t_25_optional_outputs_are_fetched_only_when_asked_for(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog([max_op()])), tmp_path)
    header = _read(tmp_path, "vips.h")
    source = _read(tmp_path, "vips.c")
    wrappers = _read(tmp_path, "vips.go")

    assert "int vipsgen_max(VipsImage* in, double* out);" in header
    assert (
        "int vipsgen_max_with_options(VipsImage* in, int size, double* out, "
        "int* x, int* y, double** out_array, int* out_array_n);"
    ) in header
    assert (
        '\tif (x != NULL) {\n\t\tg_object_get(operation, "x", x, NULL);\n\t}\n'
    ) in source
    assert (
        "\tif (out_array != NULL) {\n"
        '\t\tg_object_get(operation, "out_array", &out_array_array, NULL);\n'
        "\t\t*out_array = vipsgen_take_double_array(out_array_array, out_array_n);\n"
        "\t}\n"
    ) in source
    assert (
        "func vipsgenMaxWithOptions(in *C.VipsImage, size int) "
        "(float64, int, int, []float64, error) {"
    ) in wrappers
    assert "func vipsgenMax(in *C.VipsImage) (float64, error) {" in wrappers
    assert "\treturn float64(cOut), int(cX), int(cY), outArray, nil\n" in wrappers


def test_t_26_optional_outputs_are_returned_through_the_options_struct(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog([max_op()])), tmp_path)
    image = _read(tmp_path, "image.go")

    assert "func (r *Image) Max(options *MaxOptions) (float64, error) {" in image
    assert "\t// X Horizontal position of maximum (output)\n\tX int\n" in image
    assert "\tOutArray []float64\n" in image
    assert (
        "\t\tout, x, y, outArray, err := vipsgenMaxWithOptions(r.image, options.Size)\n"
        "\t\tif err != nil {\n"
        "\t\t\treturn 0, err\n"
        "\t\t}\n"
        "\t\toptions.X = x\n"
        "\t\toptions.Y = y\n"
        "\t\toptions.OutArray = outArray\n"
        "\t\treturn out, nil\n"
    ) in image
    assert "\tout, err := vipsgenMax(r.image)\n" in image
    assert "\t\tSize: 1,\n" in image


def test_t_27_optional_output_without_shim_guard_is_a_marshaling_error(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    shim_rules = dict(C_SHIM_RULES)
    shim_rules[(Category.INT, Direction.OUT)] = MarshalRule(
        declaration=("int* {c}",), call_expr="{c}", value_type="int*",
    )
    unguarded = Target(
        name="go",
        tables={**GO_TARGET.tables, Layer.SHIM: shim_rules},
        reserved_words=GO_TARGET.reserved_words,
        foreign_reserved_words=GO_TARGET.foreign_reserved_words,
    )
    ir = _build_ir(make_catalog([max_op()]))

    with pytest.raises(MarshalingError, match="optional output 'x'"):
        emit(ir, unguarded, BuiltinTemplateLoader(), tmp_path / "out")

    assert not (tmp_path / "out").exists()


def test_t_28_doc_urls_map_categories_to_reference_pages() -> None:
    assert doc_url("embed", "conversion") == (
        "https://www.libvips.org/API/current/libvips-conversion.html#vips-embed"
    )
    assert doc_url("extract_area", "conversion") == (
        "https://www.libvips.org/API/current/libvips-conversion.html#vips-extract-area"
    )
    assert doc_url("jpegload", "foreign") == (
        "https://www.libvips.org/API/current/VipsForeignSave.html#vips-jpegload"
    )


def test_t_29_wrappers_and_receivers_link_to_the_reference(
    make_catalog: Callable[..., SnapshotCatalog], tmp_path: Path
) -> None:
    _emit(_build_ir(make_catalog()), tmp_path)
    wrappers = _read(tmp_path, "vips.go")
    image = _read(tmp_path, "image.go")
    link = "// See: https://www.libvips.org/API/current/libvips-conversion.html#vips-embed\n"

    assert (
        "// vipsgenEmbed embed an image in a larger image\n" + link + "func vipsgenEmbed("
    ) in wrappers
    assert (
        "// Embed embed an image in a larger image\n" + link + "func (r *Image) Embed("
    ) in image
    assert "libvips-arithmetic.html#vips-avg\nfunc (r *Image) Avg(" in image
