"""GitHub webhook intake."""
