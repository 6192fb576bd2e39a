"""Live skilled-nursing bed roster for the provider directory."""

__version__ = "0.1.0"
