"""Remote inference boundary."""

from atelier.inference.client import HttpInferenceClient, InferenceClient
from atelier.inference.simulated import SimulatedInferenceClient

__all__ = ["HttpInferenceClient", "InferenceClient", "SimulatedInferenceClient"]
