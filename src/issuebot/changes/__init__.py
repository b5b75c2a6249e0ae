"""Change-set detection from git status snapshots and agent commits."""
