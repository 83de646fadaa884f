"""Line-oriented source builder and identifier case helpers."""

import re
from collections.abc import Iterable


class CodeGen:
    """Accumulates source lines with block-aware indentation."""

    def __init__(self, indent: str = "\t"):
        self._lines: list[str] = []
        self._depth = 0
        self._indent = indent

    def line(self, text: str = "") -> None:
        self._lines.append(self._indent * self._depth + text if text else "")

    def lines(self, texts: Iterable[str]) -> None:
        for text in texts:
            self.line(text)

    def comment(self, text: str, marker: str = "//") -> None:
        """Add a comment line per line of text; empty text adds nothing."""
        for part in text.splitlines():
            self.line(f"{marker} {part}".rstrip())

    def indent(self) -> None:
        self._depth += 1

    def dedent(self) -> None:
        if self._depth == 0:
            raise ValueError("dedent below column zero")
        self._depth -= 1

    def block(self, header: str, footer: str = "}") -> "_Block":
        return _Block(self, header, footer)

    def extend(self, other: "CodeGen") -> None:
        """Append another builder's lines at the current depth."""
        for text in other._lines:
            self.line(text)

    def output(self) -> str:
        return "\n".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class _Block:
    def __init__(self, gen: CodeGen, header: str, footer: str):
        self._gen = gen
        self._header = header
        self._footer = footer

    def __enter__(self) -> CodeGen:
        self._gen.line(self._header)
        self._gen.indent()
        return self._gen

    def __exit__(self, *exc_info: object) -> None:
        self._gen.dedent()
        if self._footer:
            self._gen.line(self._footer)


# ===--- Identifier case ---=== #

_SPLIT_RE = re.compile(r"[^0-9A-Za-z]+")


def split_words(name: str) -> list[str]:
    """Split a native snake/kebab name into non-empty words."""
    return [word for word in _SPLIT_RE.split(name) if word]


def snake_to_pascal(name: str) -> str:
    """embed -> Embed, extract_area -> ExtractArea, sRGB2HSV -> SRGB2HSV.

    Only the first letter of every word is raised; the rest of each word is
    kept, so mixed-case native names keep their inner capitals.
    """
    return "".join(word[0].upper() + word[1:] for word in split_words(name))


def snake_to_camel(name: str) -> str:
    """out_array -> outArray, Q -> q."""
    pascal = snake_to_pascal(name)
    if not pascal:
        return pascal
    return pascal[0].lower() + pascal[1:]


def upper_snake_to_pascal(name: str) -> str:
    """BAZ_QUX -> BazQux (words are lowercased before capitalizing)."""
    return "".join(word.capitalize() for word in split_words(name.lower()))


def guard_reserved(identifier: str, reserved: frozenset[str]) -> str:
    if identifier in reserved:
        return identifier + "_"
    return identifier
