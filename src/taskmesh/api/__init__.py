"""HTTP API for TaskMesh."""
