"""
Analysis package for patchwright.

This package contains the pure planning stages: expanding a feature
specification into steps, ordering those steps, and scoring the risk of
applying them.
"""
