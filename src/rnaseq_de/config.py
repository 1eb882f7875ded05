"""Configuration for the differential expression pipeline."""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigError
from .model import ContrastSpec

# log2(1.25): ignore fold changes below 25%
DEFAULT_LFC_THRESHOLD = 0.32


@dataclass
class PipelineConfig:
    """Configuration for a pipeline run.

    The canonical pass tests each contrast with ``lfc_threshold`` (H0:
    |LFC| <= tau) and shrinks the result.  With ``exploratory_pass`` the
    threshold-0 pass is kept as well.
    """

    contrasts: List[ContrastSpec] = field(
        default_factory=lambda: [ContrastSpec("condition", "fibrosis", "normal")]
    )
    design_factor: str = "condition"
    reference_level: Optional[str] = None  # level_b of the first contrast if None

    # Significance thresholds
    alpha: float = 0.05
    lfc_threshold: float = DEFAULT_LFC_THRESHOLD
    # Optional extra |log2FC| cutoff applied by the results filter
    lfc_cutoff: Optional[float] = None

    shrink: bool = True
    exploratory_pass: bool = False

    # Sample / gene selection before fitting
    genotype: Optional[str] = None
    min_total_count: int = 0

    # Visualisation tables
    blind_vst: bool = True
    n_top_variable: int = 500
    n_components: int = 2

    # Engine
    n_cpus: int = 1

    def __post_init__(self):
        """Validate configuration."""
        self.contrasts = [
            c if isinstance(c, ContrastSpec) else ContrastSpec.from_sequence(c)
            for c in self.contrasts
        ]
        if not self.contrasts:
            raise ConfigError("At least one contrast is required", stage="config")
        for contrast in self.contrasts:
            if contrast.factor != self.design_factor:
                raise ConfigError(
                    f"Contrast {contrast} does not use design factor {self.design_factor!r}",
                    stage="config",
                )
        labels = [c.label for c in self.contrasts]
        if len(set(labels)) != len(labels):
            raise ConfigError(f"Duplicate contrasts: {labels}", stage="config")
        if not 0 < self.alpha < 1:
            raise ConfigError(f"alpha must be in (0, 1), got {self.alpha}", stage="config")
        if self.lfc_threshold < 0:
            raise ConfigError(
                f"lfc_threshold must be >= 0, got {self.lfc_threshold}", stage="config"
            )
        if self.lfc_cutoff is not None and self.lfc_cutoff < 0:
            raise ConfigError(f"lfc_cutoff must be >= 0, got {self.lfc_cutoff}", stage="config")
        if self.min_total_count < 0:
            raise ConfigError("min_total_count must be >= 0", stage="config")
        if self.n_top_variable < 2 or self.n_components < 1:
            raise ConfigError(
                "n_top_variable must be >= 2 and n_components >= 1", stage="config"
            )
        if self.n_cpus < 1:
            raise ConfigError("n_cpus must be >= 1", stage="config")

    @property
    def effective_reference(self) -> str:
        return self.reference_level or self.contrasts[0].level_b

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {unknown}", stage="config")
        return cls(**payload)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        payload["contrasts"] = [c.as_list() for c in self.contrasts]
        return payload


def load_config(path: Union[str, Path], **overrides: Any) -> PipelineConfig:
    """
    Read a JSON configuration file.

    Keyword overrides whose value is not None replace file values.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as fh:
        try:
            payload = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path} is not valid JSON: {exc}", stage="config") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must contain a JSON object", stage="config")
    payload.update({k: v for k, v in overrides.items() if v is not None})
    return PipelineConfig.from_dict(payload)
