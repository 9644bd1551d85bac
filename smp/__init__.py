"""SMP: shotgun metagenomics pipeline (QC → host removal → profiling → assembly → binning → ARG/MGE)."""

__version__ = "1.0.0"
