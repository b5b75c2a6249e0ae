"""External change agent execution.

This module manages the aider subprocess:
- Streaming stdout/stderr capture with per-chunk callbacks
- Periodic auto-answers to interactive confirmation prompts
- One-time agent environment bootstrap
- Structured outcomes that keep partial output on failure
"""
