"""winvm package."""

__all__ = [
    "capabilities",
    "cli",
    "config",
    "constants",
    "disk",
    "exceptions",
    "host",
    "launcher",
    "models",
    "plan",
    "utils",
]
