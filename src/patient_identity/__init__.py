"""
Patient identity resolution and de-duplication service
"""

__version__ = "1.0.0"
