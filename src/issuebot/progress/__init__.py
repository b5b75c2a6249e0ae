"""Progress narration on the originating issue or pull request.

Throttled progress updates while the agent runs, comment templates for
every terminal outcome, and a publisher that never lets a failed comment
mask the operation it reports on.
"""
