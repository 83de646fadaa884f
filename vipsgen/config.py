"""Default override and exclusion tables, and the JSON file that extends them."""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from vipsgen.ir import OperationConfig

logger = logging.getLogger(__name__)

# Operations that manage libvips itself rather than transform images.
DEFAULT_EXCLUSIONS: frozenset[str] = frozenset({
    "cache",
    "system",
    "version",
})

DEFAULT_OVERRIDES: Mapping[str, OperationConfig] = {
    "jpegload": OperationConfig(needs_custom_wrapper=True, options_param="option_string"),
    "pngload": OperationConfig(needs_custom_wrapper=True, options_param="option_string"),
    "webpload": OperationConfig(needs_custom_wrapper=True, options_param="option_string"),
    "gifload": OperationConfig(needs_custom_wrapper=True, options_param="option_string"),
    "jpegsave": OperationConfig(skip_generation=True),
    "pngsave": OperationConfig(skip_generation=True),
    "webpsave": OperationConfig(skip_generation=True),
    "composite": OperationConfig(skip_generation=True),
    "composite2": OperationConfig(skip_generation=True),
}

_OVERRIDE_KEYS = {"skip_generation", "needs_custom_wrapper", "options_param"}


@dataclass(frozen=True)
class GenerationTables:
    overrides: Mapping[str, OperationConfig]
    exclusions: frozenset[str]


def default_tables() -> GenerationTables:
    return GenerationTables(overrides=dict(DEFAULT_OVERRIDES), exclusions=DEFAULT_EXCLUSIONS)


def parse_tables(data: object, base: GenerationTables | None = None) -> GenerationTables:
    """Merge a decoded config document over base (the defaults when None).

    The document is an object with optional keys:
      "exclude": list of operation names added to the exclusion set.
      "include": list of operation names removed from the exclusion set.
      "overrides": object mapping an operation name to an object with
        skip_generation, needs_custom_wrapper and options_param keys. An
        entry replaces the base entry for that name.

    Raises:
        ValueError: The document does not have this shape.
    """
    base = base or default_tables()
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")
    unknown = set(data) - {"exclude", "include", "overrides"}
    if unknown:
        raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")

    exclusions = set(base.exclusions)
    for key in ("exclude", "include"):
        names = data.get(key, [])
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise ValueError(f'"{key}" must be a list of operation names')
        if key == "exclude":
            exclusions.update(names)
        else:
            exclusions.difference_update(names)

    overrides = dict(base.overrides)
    raw_overrides = data.get("overrides", {})
    if not isinstance(raw_overrides, dict):
        raise ValueError('"overrides" must be an object')
    for name, entry in raw_overrides.items():
        if not isinstance(entry, dict):
            raise ValueError(f"override for {name} must be an object")
        bad = set(entry) - _OVERRIDE_KEYS
        if bad:
            raise ValueError(f"override for {name} has unknown keys: {', '.join(sorted(bad))}")
        options_param = entry.get("options_param", "")
        if not isinstance(options_param, str):
            raise ValueError(f"override for {name}: options_param must be a string")
        overrides[name] = OperationConfig(
            skip_generation=bool(entry.get("skip_generation", False)),
            needs_custom_wrapper=bool(entry.get("needs_custom_wrapper", False)),
            options_param=options_param,
        )

    # Both tables name the same operation: exclusion wins, log the overlap.
    for name in sorted(exclusions & set(overrides)):
        logger.debug("%s is both excluded and overridden; exclusion takes precedence", name)

    return GenerationTables(overrides=overrides, exclusions=frozenset(exclusions))


def load_tables(path: Path | None) -> GenerationTables:
    """Return the default tables, extended by the JSON file at path if given.

    Raises:
        OSError: The file cannot be read.
        ValueError: The file is not valid JSON or has the wrong shape.
    """
    if path is None:
        return default_tables()
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as err:
        raise ValueError(f"{path}: {err}") from err
    return parse_tables(data)
