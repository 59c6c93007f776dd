"""Model routing by job id prefix."""

from __future__ import annotations

from dataclasses import dataclass

from storyloop.config import RoutingSettings
from storyloop.engine.models import Job


@dataclass(frozen=True, slots=True)
class ResolvedModel:
    """Model chosen for one dispatch and the rule that chose it."""

    model: str
    resolved_by: str

    def to_metadata(self) -> dict[str, str]:
        return {"model": self.model, "resolved_by": self.resolved_by}


def resolve_model(job: Job, settings: RoutingSettings) -> ResolvedModel:
    """Job override first, then strategy: `single` or prefix-based `smart`."""

    if job.model and job.model.strip():
        return ResolvedModel(model=job.model.strip(), resolved_by="job_override")
    if settings.strategy == "single":
        return ResolvedModel(model=settings.default_model, resolved_by="single_strategy")

    prefix = job.prefix
    model = settings.model_for_prefix(prefix) if prefix else None
    if model:
        return ResolvedModel(model=model, resolved_by=f"prefix:{prefix}")
    if settings.unknown_prefix_model:
        return ResolvedModel(model=settings.unknown_prefix_model, resolved_by="unknown_prefix")
    return ResolvedModel(model=settings.default_model, resolved_by="default_model")
