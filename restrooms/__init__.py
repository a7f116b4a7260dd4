"""
Restroom directory: FHIR Location reconciliation and hydration.
"""

__version__ = "0.1.0"
