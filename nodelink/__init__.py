"""nodelink — package tree materialization for node_modules installs."""

__version__ = "0.1.0"
