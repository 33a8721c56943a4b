# =======================================================================================
# gatepass/__init__.py - Package Initialization
# =======================================================================================
"""
College Gate Pass Management System

Students request exit passes, mentors and HODs approve them in sequence,
security staff verify QR tokens at the gate and record checkout / check-in.
"""

__version__ = "1.0.0"
__author__ = "Gate Pass Team"
