"""
imgpipe - Image Processing Pipeline
===================================

Coordinate-safe geometric transforms, all-or-nothing filter chains and
ranked asynchronous image analysis, with a small command-line front end.
"""

__version__ = "0.1.0"
