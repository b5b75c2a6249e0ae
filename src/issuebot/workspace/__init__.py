"""Disposable git workspaces for a single orchestration run.

This module owns the working copy lifecycle:
- Clone into a uniquely named directory
- Create or check out the working branch
- Stage, commit and push the detected change set
- Remove the directory on every exit path
"""
