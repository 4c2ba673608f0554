"""
motocrm - messaging synchronization backend for the motorcycle-financing CRM.
"""
__version__ = "1.0.0"
