"""
Program Manager - a local supervisor for user-defined programs.

Keeps a catalog of commands in a JSON file, launches them as detached child
processes on demand, reconciles recorded state with the OS, and exposes all
of it over an HTTP/JSON API.
"""

__version__ = "1.0.0"
