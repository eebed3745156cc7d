"""Poll-based job fleet for long-running web collection tasks."""

__version__ = "0.1.0"
