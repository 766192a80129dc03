"""Stateful collaborators: workspaces, engine, jobs, streaming, janitor."""
