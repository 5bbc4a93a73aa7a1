"""Deterministic collaborators for testing TaskMesh without external services."""

from .fakes import FakeRedis, FixedResourceProbe, RecordingActionExecutor, ScriptedExecutor

__all__ = ["FakeRedis", "FixedResourceProbe", "RecordingActionExecutor", "ScriptedExecutor"]
