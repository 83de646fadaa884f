"""Live libvips catalog: queries the GObject type system through cffi.

The shared library is opened in cffi ABI mode, so no compiler is needed at
generation time. The runtime is initialized once per process and shut down
once at interpreter exit. Every handle obtained from the type system is
held by a context-manager guard and released before the query returns.
"""

import atexit
import functools
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from cffi import FFI

from vipsgen.catalog import (
    OPERATION_DEPRECATED,
    ArgumentFlags,
    IntrospectionSession,
    RawArgument,
    RawEnumValue,
    RawOperation,
    TypeCatalog,
)
from vipsgen.errors import CatalogError, ClassificationError, RuntimeInitError
from vipsgen.marshal import decode_vector

logger = logging.getLogger(__name__)

# GTypeFlags / fundamental type ids (G_TYPE_MAKE_FUNDAMENTAL(n) == n << 2)
G_TYPE_FLAG_ABSTRACT = 1 << 4
G_TYPE_BOOLEAN = 5 << 2
G_TYPE_INT = 6 << 2
G_TYPE_UINT = 7 << 2
G_TYPE_INT64 = 10 << 2
G_TYPE_UINT64 = 11 << 2
G_TYPE_ENUM = 12 << 2
G_TYPE_FLAGS = 13 << 2
G_TYPE_DOUBLE = 15 << 2
G_TYPE_STRING = 16 << 2

CDEFS = """
typedef size_t GType;
typedef int gboolean;

typedef struct _GTypeClass {
    GType g_type;
} GTypeClass;

typedef struct _GTypeInstance {
    GTypeClass *g_class;
} GTypeInstance;

typedef struct _GParamSpec {
    GTypeInstance g_type_instance;
    const char *name;
    unsigned int flags;
    GType value_type;
    GType owner_type;
} GParamSpec;

typedef struct _GValue {
    GType g_type;
    uint64_t data[2];
} GValue;

typedef struct _GEnumValue {
    int value;
    const char *value_name;
    const char *value_nick;
} GEnumValue;

typedef struct _GEnumClass {
    GTypeClass g_type_class;
    int minimum;
    int maximum;
    unsigned int n_values;
    GEnumValue *values;
} GEnumClass;

typedef struct _GFlagsValue {
    unsigned int value;
    const char *value_name;
    const char *value_nick;
} GFlagsValue;

typedef struct _GFlagsClass {
    GTypeClass g_type_class;
    unsigned int mask;
    unsigned int n_values;
    GFlagsValue *values;
} GFlagsClass;

typedef struct _VipsObject VipsObject;
typedef struct _VipsOperation VipsOperation;
typedef struct _VipsArgumentClass VipsArgumentClass;
typedef struct _VipsArgumentInstance VipsArgumentInstance;

int vips_init(const char *argv0);
void vips_shutdown(void);
const char *vips_error_buffer(void);
void vips_error_clear(void);
const char *vips_version_string(void);

GType g_type_from_name(const char *name);
const char *g_type_name(GType type);
GType *g_type_children(GType type, unsigned int *n_children);
gboolean g_type_test_flags(GType type, unsigned int flags);
GType g_type_fundamental(GType type_id);
void *g_type_class_ref(GType type);
void g_type_class_unref(void *g_class);
void g_free(void *mem);
void g_object_unref(void *object);

const char *g_param_spec_get_blurb(GParamSpec *pspec);
const GValue *g_param_spec_get_default_value(GParamSpec *pspec);
gboolean g_value_get_boolean(const GValue *value);
int g_value_get_int(const GValue *value);
unsigned int g_value_get_uint(const GValue *value);
int64_t g_value_get_int64(const GValue *value);
uint64_t g_value_get_uint64(const GValue *value);
double g_value_get_double(const GValue *value);
const char *g_value_get_string(const GValue *value);
int g_value_get_enum(const GValue *value);
unsigned int g_value_get_flags(const GValue *value);

GType vips_operation_get_type(void);
GType vips_type_find(const char *basename, const char *nickname);
const char *vips_nickname_find(GType type);
VipsOperation *vips_operation_new(const char *name);
int vips_operation_get_flags(VipsOperation *operation);
const char *vips_object_get_description(VipsObject *object);
int vips_object_get_args(VipsObject *object,
    const char ***names, int **flags, int *n_args);
int vips_object_get_argument(VipsObject *object, const char *name,
    GParamSpec **pspec,
    VipsArgumentClass **argument_class,
    VipsArgumentInstance **argument_instance);
"""

_DEFAULT_READERS = {
    G_TYPE_BOOLEAN: ("g_value_get_boolean", bool),
    G_TYPE_INT: ("g_value_get_int", int),
    G_TYPE_UINT: ("g_value_get_uint", int),
    G_TYPE_INT64: ("g_value_get_int64", int),
    G_TYPE_UINT64: ("g_value_get_uint64", int),
    G_TYPE_ENUM: ("g_value_get_enum", int),
    G_TYPE_FLAGS: ("g_value_get_flags", int),
    G_TYPE_DOUBLE: ("g_value_get_double", float),
}

_RUNTIME_LOCK = threading.Lock()


def default_library_name() -> str:
    if sys.platform == "darwin":
        return "libvips.42.dylib"
    if sys.platform == "win32":
        return "libvips-42.dll"
    return "libvips.so.42"


def _error_text(ffi: FFI, lib: Any) -> str:
    text = ffi.string(lib.vips_error_buffer()).decode("utf-8", "replace").strip()
    lib.vips_error_clear()
    return text or "no error message"


@functools.lru_cache(maxsize=None)
def _open_runtime(library: str) -> tuple[FFI, Any]:
    ffi = FFI()
    ffi.cdef(CDEFS)
    try:
        lib = ffi.dlopen(library)
    except OSError as err:
        raise RuntimeInitError(f"Unable to load {library}: {err}") from err
    if lib.vips_init(b"vipsgen") != 0:
        raise RuntimeInitError(f"vips_init failed: {_error_text(ffi, lib)}")
    atexit.register(lib.vips_shutdown)
    logger.debug("initialized %s", library)
    return ffi, lib


def load_runtime(library: str | None = None) -> tuple[FFI, Any]:
    """Open libvips and initialize it, once per process and library name.

    Raises:
        RuntimeInitError: The library cannot be opened or vips_init fails.
    """
    with _RUNTIME_LOCK:
        return _open_runtime(library or default_library_name())


class LiveCatalog(TypeCatalog):
    """Catalog reading the operation registry of the installed libvips."""

    def __init__(self, session: IntrospectionSession, library: str | None = None):
        self._session = session
        self._ffi, self._lib = load_runtime(library)
        self._names: list[str] | None = None

    # ===--- Scoped handles ---=== #

    def _cstr(self, text: str) -> Any:
        return self._session.intern(text, lambda t: self._ffi.new("char[]", t.encode("utf-8")))

    def _text(self, pointer: Any) -> str:
        if pointer == self._ffi.NULL:
            return ""
        return self._ffi.string(pointer).decode("utf-8", "replace")

    @contextmanager
    def _operation(self, name: str) -> Iterator[Any]:
        """Instantiate an operation by nickname; yields None when unusable."""
        operation = self._lib.vips_operation_new(self._cstr(name))
        if operation == self._ffi.NULL:
            self._lib.vips_error_clear()
            yield None
            return
        try:
            yield operation
        finally:
            self._lib.g_object_unref(operation)

    @contextmanager
    def _class_ref(self, gtype: int) -> Iterator[Any]:
        klass = self._lib.g_type_class_ref(gtype)
        try:
            yield klass
        finally:
            self._lib.g_type_class_unref(klass)

    @contextmanager
    def _type_children(self, gtype: int) -> Iterator[list[int]]:
        count = self._ffi.new("unsigned int *")
        children = self._lib.g_type_children(gtype, count)
        try:
            yield [int(child) for child in decode_vector(children, count[0])]
        finally:
            self._lib.g_free(children)

    # ===--- TypeCatalog ---=== #

    @property
    def source_label(self) -> str:
        return f"libvips {self._text(self._lib.vips_version_string())}"

    def _walk_types(self, gtype: int) -> Iterator[int]:
        with self._type_children(gtype) as children:
            child_types = list(children)
        for child in child_types:
            yield child
            yield from self._walk_types(child)

    def discover_operation_names(self) -> list[str]:
        if self._names is not None:
            return list(self._names)
        names: set[str] = set()
        for gtype in self._walk_types(self._lib.vips_operation_get_type()):
            if self._lib.g_type_test_flags(gtype, G_TYPE_FLAG_ABSTRACT):
                continue
            nickname = self._text(self._lib.vips_nickname_find(gtype))
            if not nickname:
                continue
            with self._operation(nickname) as operation:
                if operation is None:
                    logger.debug("cannot instantiate %s, skipping", nickname)
                    continue
                if self._lib.vips_operation_get_flags(operation) & OPERATION_DEPRECATED:
                    logger.debug("%s is deprecated, skipping", nickname)
                    continue
            names.add(nickname)
        self._names = sorted(names)
        logger.debug("discovered %d operations", len(self._names))
        return list(self._names)

    def describe_operation(self, name: str) -> RawOperation | None:
        with self._operation(name) as operation:
            if operation is None:
                return None
            vobject = self._ffi.cast("VipsObject *", operation)
            p_names = self._ffi.new("const char ***")
            p_flags = self._ffi.new("int **")
            p_count = self._ffi.new("int *")
            if self._lib.vips_object_get_args(vobject, p_names, p_flags, p_count) != 0:
                raise CatalogError(
                    f"Unable to read arguments of {name}: {_error_text(self._ffi, self._lib)}"
                )
            arg_names = [self._text(p) for p in decode_vector(p_names[0], p_count[0])]
            arg_flags = [int(f) for f in decode_vector(p_flags[0], p_count[0])]

            arguments = []
            for arg_name, flags in zip(arg_names, arg_flags):
                if not flags & ArgumentFlags.CONSTRUCT:
                    continue
                if flags & ArgumentFlags.DEPRECATED:
                    continue
                arguments.append(self._describe_argument(name, vobject, arg_name, flags))

            return RawOperation(
                name=name,
                description=self._text(self._lib.vips_object_get_description(vobject)),
                flags=int(self._lib.vips_operation_get_flags(operation)),
                arguments=tuple(arguments),
            )

    def _describe_argument(
        self, op_name: str, vobject: Any, arg_name: str, flags: int
    ) -> RawArgument:
        p_pspec = self._ffi.new("GParamSpec **")
        p_class = self._ffi.new("VipsArgumentClass **")
        p_instance = self._ffi.new("VipsArgumentInstance **")
        if self._lib.vips_object_get_argument(
            vobject, self._cstr(arg_name), p_pspec, p_class, p_instance
        ) != 0:
            raise CatalogError(
                f"Unable to read argument {op_name}.{arg_name}: "
                f"{_error_text(self._ffi, self._lib)}"
            )
        pspec = p_pspec[0]
        value_type = pspec.value_type
        type_name = self._text(self._lib.g_type_name(value_type))
        if not type_name:
            raise ClassificationError(op_name, arg_name, "", "type has no registered name")

        fundamental = self._lib.g_type_fundamental(value_type)
        kind = ""
        if fundamental == G_TYPE_ENUM:
            kind = "enum"
        elif fundamental == G_TYPE_FLAGS:
            kind = "flags"

        default = None
        if flags & ArgumentFlags.INPUT and not flags & ArgumentFlags.REQUIRED:
            default = self._default_value(pspec, fundamental)

        return RawArgument(
            name=arg_name,
            type_name=type_name,
            fundamental=kind,
            description=self._text(self._lib.g_param_spec_get_blurb(pspec)),
            flags=flags,
            default=default,
        )

    def _default_value(self, pspec: Any, fundamental: int) -> bool | int | float | str | None:
        gvalue = self._lib.g_param_spec_get_default_value(pspec)
        if gvalue == self._ffi.NULL:
            return None
        if fundamental == G_TYPE_STRING:
            text = self._lib.g_value_get_string(gvalue)
            return self._text(text) if text != self._ffi.NULL else None
        reader = _DEFAULT_READERS.get(fundamental)
        if reader is None:
            return None
        function_name, convert = reader
        return convert(getattr(self._lib, function_name)(gvalue))

    def describe_enum(self, type_name: str) -> list[RawEnumValue] | None:
        gtype = self._lib.g_type_from_name(self._cstr(type_name))
        if gtype == 0:
            return None
        fundamental = self._lib.g_type_fundamental(gtype)
        if fundamental == G_TYPE_ENUM:
            class_type = "GEnumClass *"
        elif fundamental == G_TYPE_FLAGS:
            class_type = "GFlagsClass *"
        else:
            return None
        with self._class_ref(gtype) as klass:
            enum_class = self._ffi.cast(class_type, klass)
            return [
                RawEnumValue(self._text(entry.value_name), int(entry.value),
                             self._text(entry.value_nick))
                for entry in decode_vector(enum_class.values, enum_class.n_values)
            ]

    def format_exists(self, tag: str, role: str) -> bool:
        if role not in ("load", "save"):
            raise ValueError(f"Unknown format role: {role}")
        suffixes = ("", "_buffer", "_source") if role == "load" else ("", "_buffer", "_target")
        base = self._cstr("VipsOperation")
        return any(
            self._lib.vips_type_find(base, self._cstr(f"{tag}{role}{suffix}")) != 0
            for suffix in suffixes
        )
