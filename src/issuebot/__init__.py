"""Issue-to-PR change orchestration.

This package turns repository events into pull requests:
- GitHub webhook parsing into typed change requests
- Disposable git workspaces (clone, branch, commit, push, cleanup)
- Supervised execution of the aider change agent with live narration
- Change-set detection from git status and agent commits
- Pull request creation and progress comments
"""
