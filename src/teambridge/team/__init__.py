"""File-backed coordination primitives for a team of bridge workers."""
