"""codemend: detect defects in a source tree and remediate them with validated fixes."""

__version__ = "0.1.0"
