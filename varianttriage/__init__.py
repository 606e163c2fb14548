# File: varianttriage/__init__.py
# Location: varianttriage/varianttriage/__init__.py

"""
varianttriage Package.

This package provides a reproducible variant calling, annotation and triage
pipeline: it validates a workspace, runs the external variant caller and
annotator as scoped subprocesses, and queries the annotated VCF.
"""

from .version import __version__
