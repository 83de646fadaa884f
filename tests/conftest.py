import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

from vipsgen.catalog import (  # noqa: E402
    OPTIONAL_INPUT,
    OPTIONAL_OUTPUT,
    REQUIRED_INPUT,
    REQUIRED_OUTPUT,
    IntrospectionSession,
    RawArgument,
    RawEnumValue,
    RawOperation,
    SnapshotCatalog,
)

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"

EXTEND_VALUES = [
    RawEnumValue("VIPS_EXTEND_BLACK", 0, "black"),
    RawEnumValue("VIPS_EXTEND_COPY", 1, "copy"),
    RawEnumValue("VIPS_EXTEND_REPEAT", 2, "repeat"),
    RawEnumValue("VIPS_EXTEND_MIRROR", 3, "mirror"),
    RawEnumValue("VIPS_EXTEND_WHITE", 4, "white"),
    RawEnumValue("VIPS_EXTEND_BACKGROUND", 5, "background"),
    RawEnumValue("VIPS_EXTEND_LAST", 6, "last"),
]


def in_arg(name: str, type_name: str, **kwargs: object) -> RawArgument:
    return RawArgument(name=name, type_name=type_name, flags=int(REQUIRED_INPUT), **kwargs)


def opt_arg(name: str, type_name: str, **kwargs: object) -> RawArgument:
    return RawArgument(name=name, type_name=type_name, flags=int(OPTIONAL_INPUT), **kwargs)


def out_arg(name: str, type_name: str, **kwargs: object) -> RawArgument:
    return RawArgument(name=name, type_name=type_name, flags=int(REQUIRED_OUTPUT), **kwargs)


def opt_out_arg(name: str, type_name: str, **kwargs: object) -> RawArgument:
    return RawArgument(name=name, type_name=type_name, flags=int(OPTIONAL_OUTPUT), **kwargs)


def embed_op() -> RawOperation:
    return RawOperation(
        name="embed",
        description="embed an image in a larger image",
        arguments=(
            in_arg("in", "VipsImage", description="Input image"),
            out_arg("out", "VipsImage", description="Output image"),
            in_arg("x", "gint"),
            in_arg("y", "gint"),
            in_arg("width", "gint"),
            in_arg("height", "gint"),
            opt_arg("extend", "VipsExtend", fundamental="enum", default=0,
                    description="How to generate the extra pixels"),
            opt_arg("background", "VipsArrayDouble", description="Colour for background pixels"),
        ),
    )


def getpoint_op() -> RawOperation:
    return RawOperation(
        name="getpoint",
        description="read a point from an image",
        arguments=(
            in_arg("in", "VipsImage"),
            out_arg("out_array", "VipsArrayDouble", description="Array of output values"),
            in_arg("x", "gint"),
            in_arg("y", "gint"),
        ),
    )


def black_op() -> RawOperation:
    return RawOperation(
        name="black",
        description="make a black image",
        arguments=(
            out_arg("out", "VipsImage"),
            in_arg("width", "gint"),
            in_arg("height", "gint"),
            opt_arg("bands", "gint", default=1),
        ),
    )


def avg_op() -> RawOperation:
    return RawOperation(
        name="avg",
        description="find image average",
        arguments=(
            in_arg("in", "VipsImage"),
            out_arg("out", "gdouble"),
        ),
    )


def max_op() -> RawOperation:
    return RawOperation(
        name="max",
        description="find image maximum",
        arguments=(
            in_arg("in", "VipsImage", description="Input image"),
            out_arg("out", "gdouble", description="Output value"),
            opt_out_arg("x", "gint", description="Horizontal position of maximum"),
            opt_out_arg("y", "gint", description="Vertical position of maximum"),
            opt_arg("size", "gint", default=1, description="Number of maximum values to find"),
            opt_out_arg("out_array", "VipsArrayDouble", description="Array of output values"),
        ),
    )


def basic_operations() -> list[RawOperation]:
    return [avg_op(), black_op(), embed_op(), getpoint_op()]


@pytest.fixture
def session() -> IntrospectionSession:
    return IntrospectionSession()


@pytest.fixture
def make_catalog() -> Callable[..., SnapshotCatalog]:
    def _make_catalog(
        operations: list[RawOperation] | None = None,
        enums: dict[str, list[RawEnumValue]] | None = None,
    ) -> SnapshotCatalog:
        if operations is None:
            operations = basic_operations()
        if enums is None:
            enums = {"VipsExtend": list(EXTEND_VALUES)}
        return SnapshotCatalog(operations, enums, source="test")

    return _make_catalog


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "output_dir": tmp_path / "out",
            "package": "vips",
            "templates": None,
            "static_dir": None,
            "gir": None,
            "gir_namespace": None,
            "gir_version": None,
            "gir_include": None,
            "gir_ignore_introspectable": False,
            "snapshot": None,
            "dump_snapshot": None,
            "library": None,
            "config": None,
            "verbose": False,
            "quiet": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
