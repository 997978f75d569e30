"""Region transformation and compositing engine for generative image edits."""

__version__ = "1.0.0"
