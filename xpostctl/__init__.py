"""xpostctl - cross-post one article to many publishing platforms."""

__version__ = "1.0.0"
