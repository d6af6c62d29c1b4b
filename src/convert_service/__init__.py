"""
Document Conversion Service package.

This module provides a FastAPI application exposing a single `/convert`
endpoint that delegates the actual conversion to an external converter
process (LibreOffice `soffice` by default).
"""

__all__ = ["__version__"]

__version__ = "0.2.0"
