"""Press Tracker: juice allocation and batch provenance for small-batch cideries."""

__version__ = "0.1.0"
