from .artifacts import OutputArtifact, collect_artifacts

__all__ = [
    "OutputArtifact",
    "collect_artifacts",
]
