"""Encoder automation suite.

Batch-runs encoder command templates over a set of source videos,
measures the encodes with libvmaf and collects the results for
reporting.
"""
