"""Fatal error taxonomy shared by every pipeline stage.

Recoverable conditions (an operation or enum missing from the installed
library, two operations sharing a generated identifier) are logged and
recorded in the normalized IR. Everything here aborts the run.
"""


class FatalError(RuntimeError):
    """Base for errors that abort the whole generation run."""


class RuntimeInitError(FatalError):
    """The libvips shared library could not be loaded or initialized."""


class CatalogError(FatalError):
    """An introspection descriptor cannot be used as requested."""


class ClassificationError(FatalError):
    """An argument type or direction does not map to a known category."""

    def __init__(self, operation: str, argument: str, type_name: str, reason: str):
        super().__init__(
            f"{operation}.{argument}: {reason} (native type {type_name!r})"
        )
        self.operation = operation
        self.argument = argument
        self.type_name = type_name


class MarshalingError(FatalError):
    """The rule table of a target has no entry for a (category, direction)."""


class EmissionError(FatalError):
    """Template rendering or output writing failed.

    Attributes:
        filename: Output file being produced when the failure happened.
        template: Template name being rendered, if any.
    """

    def __init__(self, message: str, filename: str = "", template: str = ""):
        context = []
        if filename:
            context.append(f"file {filename}")
        if template:
            context.append(f"template {template}")
        if context:
            message = f"{message} [{', '.join(context)}]"
        super().__init__(message)
        self.filename = filename
        self.template = template
