"""GIR descriptor catalog.

Reads operations from a GObject-Introspection repository file instead of a
live libvips. Operations are the int-returning functions with a varargs
tail (vips_embed(in, &out, x, y, w, h, ...)); the varargs carry the
optional arguments, which a GIR file cannot describe, so only required
arguments are reported.

libvips marks its varargs functions introspectable="0". Such entries are
skipped unless ignore_introspectable is set or their name matches the
include pattern.
"""

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path

from vipsgen.catalog import (
    REQUIRED_INPUT,
    REQUIRED_OUTPUT,
    RawArgument,
    RawEnumValue,
    RawOperation,
    TypeCatalog,
)
from vipsgen.errors import CatalogError

logger = logging.getLogger(__name__)

GIR_NS = {
    "gi": "http://www.gtk.org/introspection/core/1.0",
    "c": "http://www.gtk.org/introspection/c/1.0",
    "glib": "http://www.gtk.org/introspection/glib/1.0",
}

_C_TYPE = f"{{{GIR_NS['c']}}}type"
_C_IDENTIFIER = f"{{{GIR_NS['c']}}}identifier"
_C_SYMBOL_PREFIXES = f"{{{GIR_NS['c']}}}symbol-prefixes"
_GLIB_NICK = f"{{{GIR_NS['glib']}}}nick"

# Base C type (pointers and const removed) -> GType name.
SCALAR_TYPES = {
    "int": "gint",
    "gint": "gint",
    "guint": "guint",
    "gint64": "gint64",
    "guint64": "guint64",
    "double": "gdouble",
    "gdouble": "gdouble",
    "gboolean": "gboolean",
    "char": "gchararray",
    "gchar": "gchararray",
    "VipsImage": "VipsImage",
    "VipsInterpolate": "VipsInterpolate",
    "VipsSource": "VipsSource",
    "VipsSourceCustom": "VipsSourceCustom",
    "VipsTarget": "VipsTarget",
    "VipsTargetCustom": "VipsTargetCustom",
    "VipsBlob": "VipsBlob",
    "VipsArrayInt": "VipsArrayInt",
    "VipsArrayDouble": "VipsArrayDouble",
    "VipsArrayImage": "VipsArrayImage",
}

# Element type of a GIR <array> -> GType name of the whole array.
ARRAY_TYPES = {
    "gint": "VipsArrayInt",
    "int": "VipsArrayInt",
    "gdouble": "VipsArrayDouble",
    "double": "VipsArrayDouble",
    "Image": "VipsArrayImage",
    "VipsImage": "VipsArrayImage",
    "guint8": "VipsBlob",
    "gpointer": "VipsBlob",
    "void": "VipsBlob",
}


def _base_c_type(c_type: str) -> str:
    base = c_type.replace("const ", "").replace("*", "").strip()
    return base


def _doc_text(element: ET.Element) -> str:
    doc = element.find("gi:doc", GIR_NS)
    if doc is None or not doc.text:
        return ""
    return " ".join(doc.text.split())


class GirCatalog(TypeCatalog):
    """Catalog backed by a GIR XML file.

    Args:
        path: GIR file to parse.
        namespace: Expected namespace name.
        version: Expected namespace version.
        include: Regular expression; matching operation names are read even
            when marked non-introspectable.
        ignore_introspectable: Read every candidate regardless of its
            introspectable marker.

    Raises:
        CatalogError: The file has no namespace, or its name or version
            differs from the expected one.
        ET.ParseError: The file is not well-formed XML.
    """

    def __init__(
        self,
        path: Path,
        namespace: str = "Vips",
        version: str = "8.0",
        include: str | None = None,
        ignore_introspectable: bool = False,
    ):
        self._path = Path(path)
        self._include = re.compile(include) if include else None
        self._ignore_introspectable = ignore_introspectable

        root = ET.parse(self._path).getroot()
        ns_elem = root.find("gi:namespace", GIR_NS)
        if ns_elem is None:
            raise CatalogError(f"{self._path}: no <namespace> element")
        found_name = ns_elem.get("name", "")
        found_version = ns_elem.get("version", "")
        if found_name != namespace or found_version != version:
            raise CatalogError(
                f"{self._path}: namespace {found_name}-{found_version} does not match "
                f"expected {namespace}-{version}"
            )
        self._namespace = ns_elem
        self._symbol_prefix = (ns_elem.get(_C_SYMBOL_PREFIXES) or namespace.lower()).split(",")[0]

        self._enums = self._collect_enums()
        self._operations: dict[str, RawOperation] = {}
        skipped = 0
        for function in self._candidate_functions():
            if function.get("deprecated") == "1":
                logger.debug("deprecated GIR function skipped: %s", function.get("name"))
                continue
            record = self._read_function(function)
            if record is None:
                skipped += 1
                continue
            self._operations.setdefault(record.name, record)
        if skipped:
            logger.warning(
                "%d GIR functions skipped as non-introspectable; pass "
                "--gir-ignore-introspectable or --gir-include to read them",
                skipped,
            )
        logger.info("read %d operations and %d enums from %s",
                    len(self._operations), len(self._enums), self._path)

    @property
    def source_label(self) -> str:
        return f"GIR {self._path.name}"

    def discover_operation_names(self) -> list[str]:
        return sorted(self._operations)

    def describe_operation(self, name: str) -> RawOperation | None:
        return self._operations.get(name)

    def describe_enum(self, type_name: str) -> list[RawEnumValue] | None:
        entry = self._enums.get(type_name)
        return list(entry[1]) if entry is not None else None

    # ===--- Parsing ---=== #

    def _collect_enums(self) -> dict[str, tuple[str, list[RawEnumValue]]]:
        """Map c:type -> (fundamental, values) for enumerations and bitfields."""
        enums = {}
        for tag, fundamental in (("enumeration", "enum"), ("bitfield", "flags")):
            for elem in self._namespace.findall(f"gi:{tag}", GIR_NS):
                c_type = elem.get(_C_TYPE) or "Vips" + elem.get("name", "")
                values = [
                    RawEnumValue(
                        member.get(_C_IDENTIFIER) or member.get("name", "").upper(),
                        int(member.get("value", "0")),
                        member.get(_GLIB_NICK) or member.get("name", ""),
                    )
                    for member in elem.findall("gi:member", GIR_NS)
                ]
                enums[c_type] = (fundamental, values)
        return enums

    def _enum_by_gir_name(self, gir_name: str) -> tuple[str, str] | None:
        for c_type, (fundamental, _) in self._enums.items():
            if c_type in (gir_name, "Vips" + gir_name):
                return c_type, fundamental
        return None

    def _candidate_functions(self) -> list[ET.Element]:
        found = list(self._namespace.findall("gi:function", GIR_NS))
        for tag in ("class", "interface", "record"):
            for container in self._namespace.findall(f"gi:{tag}", GIR_NS):
                found.extend(container.findall("gi:method", GIR_NS))
                found.extend(container.findall("gi:function", GIR_NS))
        candidates = []
        for function in found:
            params = function.find("gi:parameters", GIR_NS)
            if params is None:
                continue
            has_varargs = any(
                param.find("gi:varargs", GIR_NS) is not None
                for param in params.findall("gi:parameter", GIR_NS)
            )
            return_type = function.find("gi:return-value/gi:type", GIR_NS)
            returns_int = return_type is not None and return_type.get("name") in ("gint", "int")
            if has_varargs and returns_int:
                candidates.append(function)
        return candidates

    def _read_function(self, function: ET.Element) -> RawOperation | None:
        """Return the record for one candidate, or None when it is filtered out."""
        c_identifier = function.get(_C_IDENTIFIER)
        if not c_identifier:
            c_identifier = f"{self._symbol_prefix}_{function.get('name', '')}"
        prefix = self._symbol_prefix + "_"
        name = c_identifier[len(prefix):] if c_identifier.startswith(prefix) else c_identifier

        if function.get("introspectable") == "0" and not self._ignore_introspectable:
            if self._include is None or not self._include.search(name):
                return None

        params = function.find("gi:parameters", GIR_NS)
        elements = []
        instance = params.find("gi:instance-parameter", GIR_NS)
        if instance is not None:
            elements.append(instance)
        regular = [
            param for param in params.findall("gi:parameter", GIR_NS)
            if param.find("gi:varargs", GIR_NS) is None
        ]

        lengths: dict[str, str] = {}
        for param in regular:
            array = param.find("gi:array", GIR_NS)
            if array is not None and array.get("length") is not None:
                index = int(array.get("length"))
                if 0 <= index < len(regular):
                    lengths.setdefault(regular[index].get("name", ""), param.get("name", ""))

        arguments = [self._read_parameter(param, lengths) for param in elements + regular]
        return RawOperation(
            name=name,
            description=_doc_text(function),
            flags=0,
            arguments=tuple(arguments),
        )

    def _read_parameter(self, param: ET.Element, lengths: dict[str, str]) -> RawArgument:
        name = param.get("name", "")
        is_output = param.get("direction") == "out"
        type_name, fundamental = self._parameter_type(param)
        return RawArgument(
            name=name,
            type_name=type_name,
            fundamental=fundamental,
            description=_doc_text(param),
            flags=int(REQUIRED_OUTPUT if is_output else REQUIRED_INPUT),
            length_for=lengths.get(name, ""),
        )

    def _parameter_type(self, param: ET.Element) -> tuple[str, str]:
        """Return (GType name, fundamental kind) of a parameter."""
        array = param.find("gi:array", GIR_NS)
        if array is not None:
            element = array.find("gi:type", GIR_NS)
            element_name = element.get("name", "") if element is not None else ""
            mapped = ARRAY_TYPES.get(element_name)
            if mapped is None and element is not None:
                mapped = ARRAY_TYPES.get(_base_c_type(element.get(_C_TYPE, "")))
            return mapped or _base_c_type(array.get(_C_TYPE, element_name)), ""

        type_elem = param.find("gi:type", GIR_NS)
        if type_elem is None:
            return "", ""
        gir_name = type_elem.get("name", "")
        base = _base_c_type(type_elem.get(_C_TYPE, ""))
        enum_entry = self._enum_by_gir_name(base or gir_name) or self._enum_by_gir_name(gir_name)
        if enum_entry is not None:
            return enum_entry
        if base in SCALAR_TYPES:
            return SCALAR_TYPES[base], ""
        if gir_name == "utf8":
            return "gchararray", ""
        if gir_name in SCALAR_TYPES:
            return SCALAR_TYPES[gir_name], ""
        if "Vips" + gir_name in SCALAR_TYPES:
            return SCALAR_TYPES["Vips" + gir_name], ""
        return base or gir_name, ""
