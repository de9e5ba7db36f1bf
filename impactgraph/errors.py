"""Exception hierarchy for impactgraph.

Per-file parse problems are *not* exceptions: they are recorded on the
:class:`~impactgraph.models.ExtractionResult` so one bad file never aborts a
build.  The exceptions below are reserved for conditions the caller must see.
"""

from __future__ import annotations


class ImpactGraphError(Exception):
    """Base class for all impactgraph errors."""


class GraphNotLoadedError(ImpactGraphError):
    """An impact query ran before ``load_graph`` or against another analysis."""

    def __init__(self, requested: str, loaded: str | None) -> None:
        self.requested = requested
        self.loaded = loaded
        if loaded is None:
            message = f"Graph not loaded. Call load_graph('{requested}') first."
        else:
            message = (
                f"Loaded graph belongs to analysis '{loaded}', "
                f"not '{requested}'. Call load_graph('{requested}') first."
            )
        super().__init__(message)


class StorageError(ImpactGraphError):
    """A batch write, delete, or read against the graph store failed."""


class BuildCancelledError(ImpactGraphError):
    """A build observed its cancellation token between files."""


class ConfigError(ImpactGraphError):
    """A configuration value is missing or has the wrong shape."""


class FindingsFormatError(ImpactGraphError):
    """A findings export could not be read or has an unknown severity."""
