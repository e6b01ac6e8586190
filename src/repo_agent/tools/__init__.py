"""Filesystem, git and process tooling used by the lifecycle."""
