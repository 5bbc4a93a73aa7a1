"""Core orchestration components for TaskMesh."""
