"""
Well Pipeline

Inference worker which locates the well, the drop and the crystals in
plate images and proposes an insertion point for solvent.
"""

__version__ = "1.0.0"
