"""Modular synthesis inventions: JSON module graphs, a signal graph runtime and front ends."""

__version__ = "0.1.0"