"""TaskMesh - multi-agent task orchestration and alerting engine."""

__version__ = "0.4.0"
