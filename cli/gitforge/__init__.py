"""GitForge command line: SSH gateway, git hooks, web server and bootstrap helpers."""

__version__ = "0.1.0"
