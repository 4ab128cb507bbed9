"""
SKM - Spec-Kit portfolio manager.

A CLI tool that:
1. Discovers Spec-Kit projects (.specify/ or specs/) under one or more roots
2. Parses constitution, spec, plan and tasks artifacts for progress signals
3. Classifies each project into a lifecycle stage
4. Scores projects so the ones needing attention come first

Usage:
    skm init          # Create .skm/ and a sample skm.yml
    skm scan          # Scan roots and print the ranked portfolio
    skm status        # Same as scan, with filters
    skm cache info    # Inspect the status cache
"""

__version__ = "0.1.0"
__author__ = "SKM"
