"""Keyed registry of concurrent preview-generation tasks."""

from atelier.previews.registry import PreviewEntry, PreviewRegistry, PreviewStatus

__all__ = ["PreviewEntry", "PreviewRegistry", "PreviewStatus"]
