"""Command-line interface for inspecting and maintaining local saves."""
