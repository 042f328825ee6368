class GraphicError(Exception):
    """Base class for errors raised by the graphic pipeline."""


class StructuralError(GraphicError):
    """A drawing surface or export target is missing.

    Fatal to the single render/export call that hit it and never retried.
    """


class ProxyError(GraphicError):
    """The image proxy service refused or failed a request."""
