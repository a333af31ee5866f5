"""Session persistence engine for the Crater image-generation assistant."""

__version__ = "0.1.0"
