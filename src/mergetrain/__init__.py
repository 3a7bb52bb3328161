"""Poll-driven merge train for GitLab merge requests."""

__version__ = "0.1.0"
