"""
AI inference collaborator: protocol and Ollama-backed client.
"""

from .client import InferenceClient, InferenceResult, OllamaInferenceClient

__all__ = [
    'InferenceClient',
    'InferenceResult',
    'OllamaInferenceClient'
]
