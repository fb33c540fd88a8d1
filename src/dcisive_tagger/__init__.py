"""Bulk metadata tagging for the Dcisive file gallery."""

__version__ = "0.1.0"
