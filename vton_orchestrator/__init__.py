"""Distributed job orchestration for virtual try-on pipelines."""

__version__ = "0.1.0"
