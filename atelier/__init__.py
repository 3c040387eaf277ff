"""
Atelier Studio Orchestration Core

Asynchronous task orchestration for the photo-studio front-end:
- Garment ingestion pipeline (photo -> clean garment image)
- Keyed registry of concurrent preview-generation tasks
"""

__version__ = "1.0.0"
