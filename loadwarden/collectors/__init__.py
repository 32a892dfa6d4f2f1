"""Data collection interfaces for LoadWarden."""

from .sample_reader import SCREEN_KIND, Sample, SampleReader

__all__ = [
    "SCREEN_KIND",
    "Sample",
    "SampleReader",
]
