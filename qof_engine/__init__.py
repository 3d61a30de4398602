"""
QOF Care-Gap Engine

Deterministic evaluation of patient records against Quality and Outcomes
Framework indicators, producing ranked care-gap findings, progress
rollups and tabular exports for clinical staff.
"""

__version__ = "1.0.0"
