"""Keep Caddy snippets (and optionally DNS) in sync with labelled Docker containers."""

__version__ = "0.3.0"
