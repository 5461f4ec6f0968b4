"""
Certificate Batch Service - FastAPI application for bulk certificate and credential generation.

This package turns a spreadsheet of recipients into individually generated certificates
(or Swayam credentials), then either emails each artifact to its recipient or bundles
every certificate into a single downloadable archive.
"""

__version__ = "1.0.0"
__author__ = "Vivek Verma"
__description__ = "FastAPI application for bulk certificate generation and delivery"
