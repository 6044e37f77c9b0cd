"""A controller that renders KCL modules from flux sources and applies them.

A `KclInstance` points at a KCL module inside a flux source artifact. The
controller renders the module with its arguments, applies the result with
server-side apply, tracks what it owns in an inventory and prunes objects
that are no longer rendered.
"""

__all__ = [
    "apply",
    "arguments",
    "exceptions",
    "inventory",
    "kcl",
    "manifest",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
