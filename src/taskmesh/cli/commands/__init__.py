"""Command groups for the TaskMesh CLI."""
