"""Questmap - adventure progression on top of your to-do list."""

__version__ = "0.4.0"
