"""Output file frames.

Every generated file is rendered from a named frame: the emitter builds the
per-file body and the frame places it under the shared header, the package
clause and the import block. Frames are string.Template texts, so a custom
frame may reference any of $header, $package, $imports, $body and
$filename.
"""

import abc
import logging
from collections.abc import Mapping
from pathlib import Path
from string import Template

from vipsgen.errors import EmissionError

logger = logging.getLogger(__name__)

GENERATED_HEADER = "// Code generated by vipsgen. DO NOT EDIT."

_GO_FRAME = """\
$header

package $package
$imports
$body
"""

BUILTIN_TEMPLATES: Mapping[str, str] = {
    "vips.h": """\
$header

#ifndef VIPSGEN_VIPS_H
#define VIPSGEN_VIPS_H

#include <stdlib.h>
#include <vips/vips.h>

$body

#endif
""",
    "vips.c": """\
$header

#include "vips.h"
#include "vipsgen.h"

$body
""",
    "vips.go": _GO_FRAME,
    "image.go": _GO_FRAME,
    "types.go": _GO_FRAME,
}


class TemplateLoader(abc.ABC):
    """Resolves a template name to its frame and renders it."""

    @abc.abstractmethod
    def source(self, name: str) -> str:
        """Return the frame text for name.

        Raises:
            EmissionError: No frame exists under this name.
        """

    def render(self, name: str, data: Mapping[str, object]) -> str:
        """Render the named frame with data.

        Raises:
            EmissionError: The frame is missing, names a placeholder that
                data does not provide, or is malformed.
        """
        text = self.source(name)
        try:
            return Template(text).substitute(data)
        except KeyError as err:
            raise EmissionError(
                f"placeholder ${err.args[0]} has no value", filename=name, template=name
            ) from err
        except ValueError as err:
            raise EmissionError(f"malformed template: {err}", filename=name, template=name) from err


class BuiltinTemplateLoader(TemplateLoader):
    """Frames shipped with vipsgen."""

    def __init__(self, templates: Mapping[str, str] = BUILTIN_TEMPLATES):
        self._templates = dict(templates)

    def source(self, name: str) -> str:
        try:
            return self._templates[name]
        except KeyError:
            raise EmissionError("no builtin template", template=name) from None


class DirectoryTemplateLoader(TemplateLoader):
    """Frames read from <directory>/<name>.tmpl, falling back per name.

    Args:
        directory: Directory holding the .tmpl files.
        fallback: Loader used for names without a file. None means every
            name must have a file.
    """

    def __init__(self, directory: Path, fallback: TemplateLoader | None = None):
        self._directory = Path(directory)
        self._fallback = fallback

    def source(self, name: str) -> str:
        path = self._directory / f"{name}.tmpl"
        if path.is_file():
            logger.debug("using template %s", path)
            try:
                return path.read_text(encoding="utf-8")
            except OSError as err:
                raise EmissionError(f"cannot read {path}: {err}", template=name) from err
        if self._fallback is None:
            raise EmissionError(f"{path} does not exist", template=name)
        return self._fallback.source(name)
