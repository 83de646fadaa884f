"""libvips operation bindings generator.

Discovers libvips operations through GObject introspection (live runtime,
GIR descriptor, or a captured snapshot), normalizes them into an
intermediate representation, and emits typed cgo wrappers for Go.

Usage:
    python -m vipsgen --output-dir ./vips
"""

__version__ = "0.4.0"
