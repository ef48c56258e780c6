"""brain-installer: materialise canonical assistant content into AI coding tools."""

__version__ = "0.1.0"
