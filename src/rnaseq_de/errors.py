"""Exception taxonomy for the differential expression pipeline.

Every fatal error carries the name of the stage that raised it and, where
one gene is to blame, its identifier.  ``DegenerateGeneError`` is the one
non-fatal member: stages collect instances of it instead of raising them.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message: str, stage: str = "", gene_id: Optional[str] = None):
        self.stage = stage
        self.gene_id = gene_id
        self.message = message
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        suffix = f" (gene {self.gene_id})" if self.gene_id is not None else ""
        return f"{prefix}{self.message}{suffix}"


class CountMatrixError(PipelineError, ValueError):
    """Count table is malformed (missing, negative, non-integer or duplicate keys)."""


class MetadataError(PipelineError, ValueError):
    """Sample metadata is malformed (missing factors, empty values, duplicate samples)."""


class ConfigError(PipelineError, ValueError):
    """Pipeline configuration is invalid."""


class AlignmentError(PipelineError):
    """Sample IDs of the count matrix and the metadata do not match one-to-one."""


class ShapeError(PipelineError):
    """A stage received a table whose genes or samples disagree with its input."""


class NormalizationError(PipelineError):
    """Size factors could not be computed or are not strictly positive."""


class ContrastError(PipelineError, ValueError):
    """Contrast names a factor or level the fitted model does not know."""


class ContrastMismatchError(PipelineError):
    """Shrinkage was requested with a contrast other than the one tested."""


class EngineOutputError(PipelineError):
    """The statistical engine returned a table violating its contract."""


class DegenerateGeneError(PipelineError):
    """A gene that cannot be tested (all-zero counts in a group, no variance).

    Collected per gene, never raised by the pipeline.
    """

    def __init__(self, gene_id: str, reason: str, stage: str = "wald_test"):
        self.reason = reason
        super().__init__(reason, stage=stage, gene_id=gene_id)
