"""
Command-line interface for Redeem Guard.
"""
