"""Command line interface for TaskMesh."""
